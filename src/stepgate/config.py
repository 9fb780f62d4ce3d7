"""Runtime configuration for the step engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

GATE_BLOCK_STATUSES = ("awaiting", "failed")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class StorageSettings:
    """Where task records and the decision journal live."""

    home: Path = Path(".stepgate")
    db_path: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000

    @property
    def journal_path(self) -> Path:
        return self.db_path or self.home / "journal.db"


@dataclass(slots=True)
class ValidationSettings:
    """Predicate execution settings."""

    command_timeout_seconds: int = 120
    output_preview_chars: int = 240


@dataclass(slots=True)
class PolicySettings:
    """Engine policy knobs."""

    gate_block_status: str = "awaiting"
    mandatory_checkpoints: bool = False
    default_max_attempts: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    storage: StorageSettings = field(default_factory=StorageSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, home: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        db_path = os.getenv("STEPGATE_DB_PATH")
        return cls(
            storage=StorageSettings(
                home=home or Path(os.getenv("STEPGATE_HOME", ".stepgate")),
                db_path=Path(db_path) if db_path else None,
                sqlite_busy_timeout_ms=int(os.getenv("STEPGATE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            validation=ValidationSettings(
                command_timeout_seconds=int(
                    os.getenv("STEPGATE_COMMAND_TIMEOUT_SECONDS", "120"),
                ),
                output_preview_chars=int(os.getenv("STEPGATE_OUTPUT_PREVIEW_CHARS", "240")),
            ),
            policy=PolicySettings(
                gate_block_status=os.getenv("STEPGATE_GATE_BLOCK_STATUS", "awaiting")
                .strip()
                .lower(),
                mandatory_checkpoints=_env_bool("STEPGATE_MANDATORY_CHECKPOINTS", default=False),
                default_max_attempts=int(os.getenv("STEPGATE_DEFAULT_MAX_ATTEMPTS", "3")),
            ),
            log_level=os.getenv("STEPGATE_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("STEPGATE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.validation.command_timeout_seconds <= 0:
            raise ValueError("STEPGATE_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.validation.output_preview_chars < 16:  # noqa: PLR2004
            raise ValueError("STEPGATE_OUTPUT_PREVIEW_CHARS must be >= 16.")
        if self.policy.gate_block_status not in GATE_BLOCK_STATUSES:
            raise ValueError(
                "STEPGATE_GATE_BLOCK_STATUS must be one of: " + ", ".join(GATE_BLOCK_STATUSES),
            )
        if self.policy.default_max_attempts < 1:
            raise ValueError("STEPGATE_DEFAULT_MAX_ATTEMPTS must be >= 1.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError("STEPGATE_LOG_LEVEL must be one of: " + ", ".join(LOG_LEVELS))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
