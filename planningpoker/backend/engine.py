"""Round state machine: start, submit, reveal and completion checks."""

from __future__ import annotations

import structlog

from .errors import InvariantViolation, Outcome, illegal_state, invalid_input, not_found
from .models import EstimationPatterns, Result, Room, SelectionStatus, VarianceAnalysis
from .state import DECK, build_round, is_deck_value
from .statistics import analyze_patterns, analyze_variance, compute_result
from .store import SessionStore

log = structlog.get_logger(__name__)


class VotingRoundEngine:
    """Drives ``NoRound -> Collecting -> Revealed`` for each room.

    The engine never keeps a round between calls; every step reads a fresh
    snapshot from the store and writes back through it.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def start_round(self, room_id: str) -> Outcome[None]:
        room = self._store.get_room(room_id)
        if room is None:
            return not_found("Room not found")
        if not room.participants:
            return illegal_state("Cannot start round with no players")

        if not self._store.set_round(room_id, build_round()):
            raise InvariantViolation(f"room {room_id!r} vanished while starting a round")
        log.info("round_started", room_id=room_id, participants=len(room.participants))
        return Outcome.success()

    def submit_value(self, room_id: str, token: str, value: object) -> Outcome[None]:
        # Submissions after reveal are allowed so estimates can be adjusted.
        if not is_deck_value(value):
            return invalid_input(f"Invalid card value. Must be one of: {', '.join(DECK)}")
        room = self._store.get_room(room_id)
        if room is None:
            return not_found("Room not found")
        if room.find_participant(token) is None:
            return not_found("Player not found in room")
        if room.round is None:
            return illegal_state("No active estimation round")

        if not self._store.add_submission(room_id, token, value):
            raise InvariantViolation(f"round in room {room_id!r} vanished while submitting")
        log.debug("value_submitted", room_id=room_id, token=token, revealed=room.round.revealed)
        return Outcome.success()

    def reveal_round(self, room_id: str) -> Outcome[Result]:
        room = self._store.get_room(room_id)
        if room is None:
            return not_found("Room not found")
        if room.round is None:
            return illegal_state("No active estimation round")

        if not room.round.revealed:
            self._store.reveal_round(room_id)
            log.info("round_revealed", room_id=room_id, submissions=len(room.round.submissions))
        result = self.current_result(room_id)
        if result is None:
            raise InvariantViolation(f"round in room {room_id!r} not revealed after reveal")
        return Outcome.success(result)

    def current_result(self, room_id: str) -> Result | None:
        room = self._revealed_room(room_id)
        if room is None:
            return None
        return compute_result(room, room.round)

    def variance_analysis(self, room_id: str) -> VarianceAnalysis | None:
        room = self._revealed_room(room_id)
        if room is None:
            return None
        return analyze_variance(list(room.round.submissions.values()))

    def estimation_patterns(self, room_id: str) -> EstimationPatterns | None:
        room = self._revealed_room(room_id)
        if room is None:
            return None
        return analyze_patterns(list(room.round.submissions.values()))

    def is_complete(self, room_id: str) -> bool:
        room = self._store.get_room(room_id)
        if room is None or room.round is None:
            return False
        connected = [p for p in room.participants if p.is_connected]
        return bool(connected) and all(p.token in room.round.submissions for p in connected)

    def selection_status(self, room_id: str) -> list[SelectionStatus]:
        room = self._store.get_room(room_id)
        if room is None:
            return []
        submitted = room.round.submissions if room.round is not None else {}
        return [
            SelectionStatus(
                token=p.token,
                name=p.name,
                has_submitted=p.token in submitted,
                is_connected=p.is_connected,
            )
            for p in room.participants
        ]

    def _revealed_room(self, room_id: str) -> Room | None:
        room = self._store.get_room(room_id)
        if room is None or room.round is None or not room.round.revealed:
            return None
        return room
