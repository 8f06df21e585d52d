from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .control import DEFAULT_HOST, DEFAULT_PORT

ENV_PREFIX = "SIMPLENVR_"
DEFAULT_DB = Path("nvr.db")


@dataclass
class Settings:
    """Runtime settings for ``simplenvr serve``."""

    db_path: Path = DEFAULT_DB
    control_host: str = DEFAULT_HOST
    control_port: int = DEFAULT_PORT
    http_host: str = "127.0.0.1"
    http_port: int = 8000
    http_enabled: bool = True
    ffmpeg: str = "ffmpeg"
    log_level: str = "INFO"
    autostart: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read ``SIMPLENVR_*`` variables, falling back to the defaults."""
        env = os.environ if environ is None else environ

        def get(name: str, default: str) -> str:
            return env.get(ENV_PREFIX + name, default)

        return cls(
            db_path=Path(get("DB", str(DEFAULT_DB))),
            control_host=get("CONTROL_HOST", DEFAULT_HOST),
            control_port=int(get("CONTROL_PORT", str(DEFAULT_PORT))),
            http_host=get("HTTP_HOST", "127.0.0.1"),
            http_port=int(get("HTTP_PORT", "8000")),
            http_enabled=get("HTTP_ENABLED", "1").lower() not in ("0", "false", "no"),
            ffmpeg=get("FFMPEG", "ffmpeg"),
            log_level=get("LOG_LEVEL", "INFO").upper(),
            autostart=get("AUTOSTART", "0").lower() in ("1", "true", "yes"),
        )
