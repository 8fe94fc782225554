"""Runtime settings and logging setup for ccdpin."""

import logging
import logging.handlers
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "ccdpin"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings. Read once at startup."""

    config_dir: Path = field(default=DEFAULT_CONFIG_DIR)
    poll_interval: float = 1.0  # Seconds, minimum 0.1
    debounce_delay: float = 1.0
    max_staleness: float = 5.0
    auto_apply: bool = False
    log_level: str = "INFO"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def rules_file(self) -> Path:
        return self.config_dir / "monitored_processes.json"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "ccdpin.log"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``CCDPIN_*`` environment variables."""
        env = os.environ if env is None else env
        config_dir = env.get("CCDPIN_CONFIG_DIR")
        log_level = env.get("CCDPIN_LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"CCDPIN_LOG_LEVEL is not a logging level: {log_level!r}")
        return cls(
            config_dir=Path(config_dir).expanduser() if config_dir else DEFAULT_CONFIG_DIR,
            poll_interval=max(0.1, _float(env, "CCDPIN_POLL_INTERVAL", 1.0)),
            debounce_delay=_float(env, "CCDPIN_DEBOUNCE_DELAY", 1.0),
            max_staleness=_float(env, "CCDPIN_MAX_STALENESS", 5.0),
            auto_apply=_bool(env, "CCDPIN_AUTO_APPLY", False),
            log_level=log_level,
        )


def setup_logging(settings: Settings) -> logging.Handler:
    """
    Send ccdpin logs to a rotating file.

    The terminal belongs to the UI, so nothing is written to stderr.
    """
    settings.config_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        settings.log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger("ccdpin")
    logger.setLevel(settings.log_level)
    logger.addHandler(handler)
    return handler
