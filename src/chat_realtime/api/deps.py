"""Relay dependency helpers."""
from __future__ import annotations

from chat_realtime.application.ports.auth import TokenVerifier
from chat_realtime.config import settings
from chat_realtime.infrastructure.auth.hs256_verifier import HS256Verifier


def get_verifier() -> TokenVerifier:
    assert settings.JWT_SECRET, "JWT_SECRET must be set to run the relay"
    return HS256Verifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)
