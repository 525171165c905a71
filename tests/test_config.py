"""Tests for engine configuration and the property weight policy."""
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from notd_engine.config import (
    DEFAULT_INTERNAL_NAMES,
    DEFAULT_TASK_STATES,
    EngineConfig,
    PropertyWeightRule,
    SpecialStateWeights,
    UpdateBehavior,
)


class TestWeightPolicy:
    """Default weight table and fallbacks."""

    def test_default_weight_table(self):
        cfg = EngineConfig()
        assert cfg.update_behavior_for(2) == UpdateBehavior.REPLACE
        assert cfg.update_behavior_for(3) == UpdateBehavior.REPLACE
        assert cfg.update_behavior_for(4) == UpdateBehavior.APPEND

    def test_visibility_in_view_mode(self):
        cfg = EngineConfig()
        assert cfg.is_visible_in_view_mode(2) is True
        assert cfg.is_visible_in_view_mode(3) is False
        assert cfg.is_visible_in_view_mode(4) is False

    def test_unknown_weight_falls_back_to_replace(self):
        cfg = EngineConfig()
        assert cfg.rule_for(7) is None
        assert cfg.update_behavior_for(7) == UpdateBehavior.REPLACE
        assert cfg.is_visible_in_view_mode(7) is True

    def test_none_weight_uses_default_weight(self):
        cfg = EngineConfig()
        assert cfg.default_weight == 3
        assert cfg.rule_for(None).label == "Internal"

    def test_rules_are_frozen(self):
        rule = EngineConfig().rule_for(2)
        with pytest.raises(PydanticValidationError):
            rule.update_behavior = UpdateBehavior.APPEND

    def test_mismatched_weight_key_rejected(self):
        with pytest.raises(PydanticValidationError, match="does not match"):
            EngineConfig(property_weights={5: PropertyWeightRule(weight=2)})

    def test_weight_below_two_rejected(self):
        with pytest.raises(PydanticValidationError):
            PropertyWeightRule(weight=1)

    def test_special_weights_defaults(self):
        weights = SpecialStateWeights()
        assert weights.task == 4
        assert weights.done_at == 3
        assert weights.sql == 3
        assert weights.link == 3
        assert weights.url == 3
        assert weights.transclusion == 3


class TestEnvironment:
    """Values read from NOTD_* environment variables."""

    def test_task_states_from_env(self, monkeypatch):
        monkeypatch.setenv("NOTD_TASK_STATES", "TODO, LATER ,NOW")
        assert EngineConfig().task_states == ("TODO", "LATER", "NOW")

    def test_empty_task_states_env(self, monkeypatch):
        monkeypatch.setenv("NOTD_TASK_STATES", "")
        assert EngineConfig().task_states == ()

    def test_default_task_states(self, monkeypatch):
        monkeypatch.delenv("NOTD_TASK_STATES", raising=False)
        assert EngineConfig().task_states == DEFAULT_TASK_STATES
        assert "NLR" in DEFAULT_TASK_STATES

    def test_webhooks_switch_from_env(self, monkeypatch):
        monkeypatch.setenv("NOTD_WEBHOOKS_ENABLED", "false")
        assert EngineConfig().webhooks_enabled is False
        monkeypatch.setenv("NOTD_WEBHOOKS_ENABLED", "1")
        assert EngineConfig().webhooks_enabled is True

    def test_webhook_timeout_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("NOTD_WEBHOOK_TIMEOUT", "0")
        with pytest.raises(PydanticValidationError, match="webhook_timeout"):
            EngineConfig()

    def test_database_path_from_env(self, monkeypatch):
        monkeypatch.setenv("NOTD_DATABASE_PATH", "/tmp/notd-test/db.sqlite")
        assert EngineConfig().database_path == Path("/tmp/notd-test/db.sqlite")


class TestPaths:
    """Path helpers."""

    def test_relative_path_resolved_against_base_dir(self, tmp_path):
        cfg = EngineConfig(base_dir=tmp_path, database_path=Path("db/notd.sqlite"))
        assert cfg.get_absolute_path(cfg.database_path) == tmp_path / "db" / "notd.sqlite"

    def test_db_url_creates_parent(self, tmp_path):
        cfg = EngineConfig(base_dir=tmp_path, database_path=Path("nested/notd.sqlite"))
        url = cfg.get_db_url()
        assert url == f"sqlite:///{tmp_path / 'nested' / 'notd.sqlite'}"
        assert (tmp_path / "nested").is_dir()

    def test_default_internal_names(self):
        assert "alias" in DEFAULT_INTERNAL_NAMES
        assert "welcome_notes_added" in DEFAULT_INTERNAL_NAMES
        assert "status" not in DEFAULT_INTERNAL_NAMES
