"""Engine settings loaded from ``APIFORGE_*`` environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .streams import StreamCoercionMode

STREAM_MODES = {
    "none": StreamCoercionMode.NONE,
    "native": StreamCoercionMode.INHERITS_STREAM,
    "duck": StreamCoercionMode.DUCK_PIPE,
    "any": StreamCoercionMode.ANY,
}

ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime settings for :class:`~apiforge.app.ManagedApi`."""

    stream_mode: str = "any"
    surface_errors: bool = True
    raise_errors: bool = False
    validate_parsed_body: bool = True
    log_level: str = "WARNING"

    @property
    def stream_coercion(self) -> StreamCoercionMode:
        return STREAM_MODES[self.stream_mode]


def validate_settings(settings: Settings) -> None:
    """Validate *settings*.

    Raises
    ------
    ValueError
        If the stream mode or log level is unsupported.
    """

    if settings.stream_mode not in STREAM_MODES:
        raise ValueError(f"Unsupported stream mode: {settings.stream_mode}")
    if settings.log_level not in ALLOWED_LOG_LEVELS:
        raise ValueError(f"Unsupported log level: {settings.log_level}")


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def load_settings() -> Settings:
    """Return configuration derived from ``APIFORGE_*`` variables."""

    settings = Settings(
        stream_mode=os.getenv("APIFORGE_STREAM_MODE", "any").strip().lower(),
        surface_errors=_flag("APIFORGE_SURFACE_ERRORS", True),
        raise_errors=_flag("APIFORGE_RAISE_ERRORS", False),
        validate_parsed_body=_flag("APIFORGE_VALIDATE_PARSED_BODY", True),
        log_level=os.getenv("APIFORGE_LOG_LEVEL", "WARNING").strip().upper(),
    )
    validate_settings(settings)
    return settings


def configure_logging(settings: Settings) -> logging.Logger:
    """Apply ``settings.log_level`` to the ``apiforge`` logger."""

    logger = logging.getLogger("apiforge")
    logger.setLevel(settings.log_level)
    return logger


__all__ = [
    "ALLOWED_LOG_LEVELS",
    "STREAM_MODES",
    "Settings",
    "configure_logging",
    "load_settings",
    "validate_settings",
]
