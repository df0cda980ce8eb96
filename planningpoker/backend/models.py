"""Domain models for rooms, rounds and revealed results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Participant:
    token: str
    name: str
    is_connected: bool
    joined_at: datetime


@dataclass(frozen=True)
class Round:
    # participant token -> card value; copied at every store boundary
    submissions: dict[str, str] = field(default_factory=dict)
    revealed: bool = False
    started_at: datetime | None = None


@dataclass(frozen=True)
class Room:
    name: str
    created_at: datetime
    participants: tuple[Participant, ...] = ()
    round: Round | None = None

    @property
    def id(self) -> str:
        return self.name

    def find_participant(self, token: str) -> Participant | None:
        for participant in self.participants:
            if participant.token == token:
                return participant
        return None


@dataclass(frozen=True)
class SelectionStatus:
    token: str
    name: str
    has_submitted: bool
    is_connected: bool


@dataclass(frozen=True)
class RevealedCard:
    token: str
    name: str
    value: str


@dataclass(frozen=True)
class Statistics:
    average: float
    median: str
    range: list[str]
    has_variance: bool


@dataclass(frozen=True)
class Result:
    cards: list[RevealedCard]
    statistics: Statistics


@dataclass(frozen=True)
class VarianceAnalysis:
    has_variance: bool
    level: str
    discussion_prompt: str
    highlighted_cards: list[str]


@dataclass(frozen=True)
class EstimationPatterns:
    consensus: bool
    majority_card: str | None
    outliers: list[str]
    color_coding: dict[str, str]


@dataclass(frozen=True)
class Membership:
    room: Room
    participant: Participant
