"""Root conftest: exports .env.test before chat_realtime.config builds settings."""
from __future__ import annotations

import os
from pathlib import Path

_env_test = Path(__file__).resolve().parent / ".env.test"
if _env_test.exists():
    for raw in _env_test.read_text().splitlines():
        entry = raw.strip()
        if entry and not entry.startswith("#"):
            key, _, value = entry.partition("=")
            os.environ.setdefault(key.strip(), value.strip())
