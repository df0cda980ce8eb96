"""Factories for fresh rooms, participants and rounds, plus the card deck."""

from __future__ import annotations

from datetime import datetime, timezone

from .models import Participant, Room, Round
from .security import generate_token

UNKNOWN_CARD = "?"
BREAK_CARD = "☕"

# Order matters: revealed value sets are sorted by position in this tuple.
DECK: tuple[str, ...] = ("0.5", "1", "2", "3", "5", "8", "13", "21", UNKNOWN_CARD, BREAK_CARD)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_deck_value(value: object) -> bool:
    return isinstance(value, str) and value in DECK


def build_room(name: str) -> Room:
    return Room(name=name, created_at=utc_now())


def build_participant(name: str) -> Participant:
    return Participant(token=generate_token(), name=name, is_connected=True, joined_at=utc_now())


def build_round() -> Round:
    return Round(submissions={}, revealed=False, started_at=utc_now())
