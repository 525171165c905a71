"""Common test fixtures for the Notd engine."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from notd_engine import observability
from notd_engine.config import config
from notd_engine.models.db_models import (
    DBNote,
    DBPage,
    create_db_engine,
    get_session_factory,
    init_db,
)
from notd_engine.services.content_service import ContentService
from tests.fakes import FakeResponse


@pytest.fixture
def temp_dirs():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture(autouse=True)
def isolated_metrics(tmp_path, monkeypatch):
    """Keep the global metrics collector away from ~/.notd."""
    collector = observability.MetricsCollector(tmp_path / "metrics.json")
    monkeypatch.setattr(observability, "metrics", collector)
    return collector


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "database_path", temp_dirs / "test_notd.db")
    monkeypatch.setattr(config, "webhooks_enabled", True)
    yield config


@pytest.fixture
def engine(test_config):
    """Initialised engine on a temp-file database."""
    engine = init_db(create_db_engine(test_config.get_db_url()))
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def seeded(session_factory):
    """A 'Home' page holding one note, plus a 'Project X' page.

    Returns:
        Dict of ids: page_id, note_id, target_page_id.
    """
    with session_factory() as session:
        home = DBPage(name="Home", content="")
        target = DBPage(name="Project X", content="")
        session.add_all([home, target])
        session.flush()
        note = DBNote(page_id=home.id, content="", order_index=1)
        session.add(note)
        session.commit()
        return {"page_id": home.id, "note_id": note.id, "target_page_id": target.id}


@pytest.fixture
def http_client():
    """Mocked httpx.Client used by every WebhookNotifier created in the test."""
    with patch("notd_engine.services.webhook_notifier.httpx.Client") as MockClient:
        client_instance = MagicMock()
        client_instance.post.return_value = FakeResponse(200, "ok")
        MockClient.return_value = client_instance
        yield client_instance


@pytest.fixture
def content_service(engine, test_config, http_client):
    """ContentService on the test database with HTTP mocked out."""
    service = ContentService(engine=engine, config=test_config)
    yield service
    service.notifier.close()
