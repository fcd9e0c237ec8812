from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

ENV_PREFIX = "CONTRACTMATCH_"


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    blob_dir: str = "./blobs"
    public_base_url: str = "http://127.0.0.1:8080/blobs"
    session_ttl_ms: int = 60 * 60 * 1000
    ping_interval_s: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``CONTRACTMATCH_*`` variables, e.g. ``CONTRACTMATCH_PORT``."""

        environ = os.environ if environ is None else environ
        values = {}
        for item in fields(cls):
            raw = environ.get(ENV_PREFIX + item.name.upper())
            if raw is None or raw == "":
                continue
            if item.name in ("port", "session_ttl_ms", "ping_interval_s"):
                try:
                    values[item.name] = int(raw)
                except ValueError as exc:
                    raise ValueError(f"{ENV_PREFIX}{item.name.upper()} must be an integer") from exc
            else:
                values[item.name] = raw
        return cls(**values)
