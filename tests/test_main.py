"""Tests for the command line entry point."""
import io
import json
from unittest.mock import patch

import pytest

from notd_engine.main import main, parse_args


@pytest.fixture
def cli(test_config, temp_dirs, http_client, monkeypatch):
    """Run main() against the test database with file logging disabled."""
    monkeypatch.setattr(test_config, "log_level", test_config.log_level)
    db_path = str(temp_dirs / "test_notd.db")

    def run(*argv):
        with patch("notd_engine.main.configure_logging"), patch("notd_engine.main.atexit.register"):
            return main(["--database-path", db_path, *argv])

    return run


def output(capsys):
    captured = capsys.readouterr()
    return json.loads(captured.out) if captured.out else None, captured.err


class TestParseArgs:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_content_and_file_exclusive(self, tmp_path):
        with pytest.raises(SystemExit):
            parse_args(["process", "note", "1", "--content", "x", "--file", str(tmp_path / "f")])

    def test_entity_type_choices(self):
        with pytest.raises(SystemExit):
            parse_args(["properties", "block", "1"])

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("NOTD_LOG_LEVEL", raising=False)
        args = parse_args(["properties", "page", "3", "--include-internal"])
        assert args.command == "properties"
        assert args.entity_id == 3
        assert args.include_internal is True
        assert args.log_level == "INFO"


class TestCommands:
    def test_process(self, cli, capsys, seeded):
        assert cli("process", "note", str(seeded["note_id"]), "--content", "{priority:::high}") == 0
        data, _ = output(capsys)
        assert data["properties"][0]["name"] == "priority"
        assert data["properties"][0]["weight"] == 3

    def test_save_then_properties(self, cli, capsys, seeded):
        note_id = str(seeded["note_id"])
        assert cli("save", "note", note_id, "--content", "{color::red}") == 0
        data, _ = output(capsys)
        assert [p["name"] for p in data["persisted"]] == ["color"]

        assert cli("properties", "note", note_id) == 0
        data, _ = output(capsys)
        assert data == {"color": "red"}

    def test_content_from_stdin(self, cli, capsys, seeded, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("TODO from stdin"))
        assert cli("process", "note", str(seeded["note_id"])) == 0
        data, _ = output(capsys)
        assert data["properties"][0]["value"] == "TODO"

    def test_content_from_file(self, cli, capsys, seeded, tmp_path):
        source = tmp_path / "page.md"
        source.write_text("[[Project X]]", encoding="utf-8")
        assert cli("process", "page", str(seeded["page_id"]), "--file", str(source)) == 0
        data, _ = output(capsys)
        assert data["properties"][0]["value"] == "Project X"

    def test_apply_definitions(self, cli, capsys, seeded):
        assert cli("apply-definitions") == 0
        data, _ = output(capsys)
        assert data == {"updated": 0}

    def test_engine_error_reported_as_json(self, cli, capsys, engine):
        assert cli("save", "page", "999", "--content", "{a::1}") == 1
        data, err = output(capsys)
        assert data is None
        error = json.loads(err)
        assert error["error"] == "EntityNotFoundError"
        assert error["code"] == 1001

    def test_unknown_webhook(self, cli, capsys, engine):
        assert cli("verify-webhook", "5") == 1
        _, err = output(capsys)
        assert json.loads(err)["code_name"] == "WEBHOOK_NOT_FOUND"

    def test_metrics_reports_breakdowns(self, cli, capsys, seeded):
        assert cli("save", "note", str(seeded["note_id"]), "--content", "{color::red}") == 0
        capsys.readouterr()

        assert cli("metrics") == 0
        data, _ = output(capsys)
        assert data["save_content"]["count"] == 1
        assert data["pattern_handler"]["by_key"]["properties"]["count"] == 1
