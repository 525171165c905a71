"""
Notd engine - content pattern processing and property persistence for the
Notd outliner.

Scans note and page text for embedded micro-syntax ({key::value} properties,
[[page links]], task markers, block references, SQL{...} queries, URLs),
reconciles the extracted properties against the property store and fires
side-effect triggers and webhooks when watched properties change.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notd-engine")
except PackageNotFoundError:
    __version__ = "0.3.0"
