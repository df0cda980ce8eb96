"""Outcome values returned by the lifecycle and round layers.

Expected business failures (unknown room, taken name, bad card) travel as
``Outcome`` values. ``InvariantViolation`` is reserved for states the store
should never be able to reach.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    ILLEGAL_STATE = "illegal_state"


@dataclass(frozen=True)
class SessionError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: SessionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome[T]":
        return cls(error=SessionError(kind=kind, message=message))


def not_found(message: str) -> Outcome:
    return Outcome.failure(ErrorKind.NOT_FOUND, message)


def conflict(message: str) -> Outcome:
    return Outcome.failure(ErrorKind.CONFLICT, message)


def invalid_input(message: str) -> Outcome:
    return Outcome.failure(ErrorKind.INVALID_INPUT, message)


def illegal_state(message: str) -> Outcome:
    return Outcome.failure(ErrorKind.ILLEGAL_STATE, message)


class InvariantViolation(RuntimeError):
    """Raised when the store contradicts a check made a moment earlier."""
