"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    log_format: str = "console"
    max_room_name_length: int = 100
    max_participant_name_length: int = 30


def load_settings() -> BackendSettings:
    port_raw = os.getenv("PLANNINGPOKER_PORT", "8000")
    room_limit_raw = os.getenv("PLANNINGPOKER_MAX_ROOM_NAME_LENGTH", "100")
    name_limit_raw = os.getenv("PLANNINGPOKER_MAX_PARTICIPANT_NAME_LENGTH", "30")
    return BackendSettings(
        host=os.getenv("PLANNINGPOKER_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("PLANNINGPOKER_LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("PLANNINGPOKER_LOG_FORMAT", "console").lower(),
        max_room_name_length=int(room_limit_raw),
        max_participant_name_length=int(name_limit_raw),
    )
