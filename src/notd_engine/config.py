"""Configuration module for the Notd engine."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default database
_USER_ENV = Path.home() / ".notd" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


class UpdateBehavior(str, Enum):
    """How the property store is updated when a property is saved again."""

    APPEND = "append"  # Insert a new row, keep the old ones as history
    REPLACE = "replace"  # Delete the active rows for the name, then insert


class PropertyWeightRule(BaseModel):
    """Update and visibility policy attached to a property weight.

    The weight of a property is the number of colons used in its syntax
    (``{key::value}`` is weight 2, ``{key:::value}`` weight 3 and so on).
    """

    weight: int = Field(..., ge=2)
    label: str = ""
    description: str = ""
    update_behavior: UpdateBehavior = UpdateBehavior.REPLACE
    visible_in_view_mode: bool = True
    visible_in_edit_mode: bool = True

    model_config = {"frozen": True}


class SpecialStateWeights(BaseModel):
    """Weights assigned to properties emitted by the built-in handlers."""

    sql: int = 3
    task: int = 4
    done_at: int = 3
    transclusion: int = 3
    link: int = 3
    url: int = 3

    model_config = {"frozen": True}


DEFAULT_PROPERTY_WEIGHTS: Dict[int, PropertyWeightRule] = {
    2: PropertyWeightRule(
        weight=2,
        label="Public",
        description="Standard properties visible in all views.",
        update_behavior=UpdateBehavior.REPLACE,
        visible_in_view_mode=True,
        visible_in_edit_mode=True,
    ),
    3: PropertyWeightRule(
        weight=3,
        label="Internal",
        description="Properties for internal logic, hidden by default.",
        update_behavior=UpdateBehavior.REPLACE,
        visible_in_view_mode=False,
        visible_in_edit_mode=True,
    ),
    4: PropertyWeightRule(
        weight=4,
        label="System Log",
        description="Properties that act as an immutable log or history.",
        update_behavior=UpdateBehavior.APPEND,
        visible_in_view_mode=False,
        visible_in_edit_mode=False,
    ),
}

DEFAULT_TASK_STATES: Tuple[str, ...] = (
    "TODO",
    "DOING",
    "DONE",
    "SOMEDAY",
    "WAITING",
    "CANCELLED",
    "NLR",
)

DEFAULT_INTERNAL_NAMES: FrozenSet[str] = frozenset(
    {
        "internal",
        "created_at",
        "updated_at",
        "order_index",
        "type",
        "alias",
        "welcome_notes_added",
    }
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Read a comma separated list; an explicitly empty variable yields ()."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class EngineConfig(BaseModel):
    """Configuration for the Notd engine."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTD_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTD_DATABASE_PATH", "db/database.sqlite")
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTD_LOG_LEVEL", "INFO")
    )
    # Master switch for all outbound webhook deliveries
    webhooks_enabled: bool = Field(
        default_factory=lambda: _env_flag("NOTD_WEBHOOKS_ENABLED", "true")
    )
    webhook_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTD_WEBHOOK_TIMEOUT", "10"))
    )
    webhook_user_agent: str = Field(default="Notd-Webhook/1.0")
    # Task keywords recognised at the start of a line
    task_states: Tuple[str, ...] = Field(
        default_factory=lambda: _env_list("NOTD_TASK_STATES", DEFAULT_TASK_STATES)
    )
    # Property policy
    default_weight: int = Field(default=3)
    default_update_behavior: UpdateBehavior = Field(default=UpdateBehavior.REPLACE)
    property_weights: Dict[int, PropertyWeightRule] = Field(
        default_factory=lambda: dict(DEFAULT_PROPERTY_WEIGHTS)
    )
    special_weights: SpecialStateWeights = Field(default_factory=SpecialStateWeights)
    default_internal_names: FrozenSet[str] = Field(
        default_factory=lambda: DEFAULT_INTERNAL_NAMES
    )

    model_config = {"validate_assignment": True}

    @field_validator("task_states")
    @classmethod
    def _strip_task_states(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Drop blank entries; an empty vocabulary is handled by the handler."""
        return tuple(state.strip() for state in v if state and state.strip())

    @model_validator(mode="after")
    def _validate_policy(self) -> "EngineConfig":
        """Check the weight table is consistent with its keys."""
        if self.webhook_timeout <= 0:
            raise ValueError("webhook_timeout must be > 0")
        for key, rule in self.property_weights.items():
            if key != rule.weight:
                raise ValueError(
                    f"property_weights key {key} does not match rule weight {rule.weight}"
                )
        if self.default_weight not in self.property_weights:
            logger.warning(
                "Default property weight %d has no rule; '%s' behavior will apply",
                self.default_weight,
                self.default_update_behavior.value,
            )
        return self

    def rule_for(self, weight: Optional[int]) -> Optional[PropertyWeightRule]:
        """Return the weight rule for ``weight`` (default weight when None)."""
        if weight is None:
            weight = self.default_weight
        return self.property_weights.get(weight)

    def update_behavior_for(self, weight: Optional[int]) -> UpdateBehavior:
        """Resolve the update behavior, falling back to the default behavior."""
        rule = self.rule_for(weight)
        return rule.update_behavior if rule else self.default_update_behavior

    def is_visible_in_view_mode(self, weight: Optional[int]) -> bool:
        """Unknown weights are treated as visible."""
        rule = self.rule_for(weight)
        return rule.visible_in_view_mode if rule else True

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = EngineConfig()
