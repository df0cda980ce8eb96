"""Session store interface and the in-memory implementation."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Protocol

import structlog

from planningpoker.backend.models import Participant, Room, Round

log = structlog.get_logger(__name__)


class SessionStore(Protocol):
    def create_room(self, room: Room) -> bool:
        """Insert a room; callers check for an existing key first."""

    def get_room(self, room_id: str) -> Room | None:
        """Return a snapshot of the room."""

    def list_rooms(self) -> list[Room]:
        """Return snapshots of every room."""

    def update_room(self, room_id: str, **changes: Any) -> bool:
        """Replace top-level room attributes."""

    def delete_room(self, room_id: str) -> bool:
        """Drop a room together with its members' reverse mappings."""

    def add_participant(self, room_id: str, participant: Participant) -> bool:
        """Add a participant, moving them out of any other room first."""

    def remove_participant(self, room_id: str, token: str) -> bool:
        """Remove a participant and their unrevealed submission."""

    def update_participant(self, room_id: str, token: str, **changes: Any) -> bool:
        """Replace participant attributes; going inactive clears an unrevealed submission."""

    def get_participant_room(self, token: str) -> str | None:
        """Return the room a participant currently belongs to."""

    def get_participants(self, room_id: str) -> list[Participant]:
        """Return the room's participants in join order."""

    def set_round(self, room_id: str, round_: Round | None) -> bool:
        """Replace the room's round wholesale."""

    def get_round(self, room_id: str) -> Round | None:
        """Return a snapshot of the room's round."""

    def add_submission(self, room_id: str, token: str, value: str) -> bool:
        """Record or overwrite a submission in the current round."""

    def reveal_round(self, room_id: str) -> bool:
        """Mark the current round revealed; repeat calls are harmless."""

    def room_count(self) -> int:
        """Number of rooms held."""

    def participant_count(self) -> int:
        """Number of participants mapped to a room."""

    def active_room_count(self) -> int:
        """Number of rooms with at least one participant."""


def _copy_round(round_: Round | None) -> Round | None:
    if round_ is None:
        return None
    return replace(round_, submissions=dict(round_.submissions))


def _copy_room(room: Room) -> Room:
    return replace(room, participants=tuple(room.participants), round=_copy_round(room.round))


def _without_submission(round_: Round | None, token: str) -> Round | None:
    if round_ is None or token not in round_.submissions:
        return round_
    submissions = dict(round_.submissions)
    submissions.pop(token)
    return replace(round_, submissions=submissions)


@dataclass
class InMemorySessionStore:
    def __post_init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._participant_rooms: dict[str, str] = {}

    def create_room(self, room: Room) -> bool:
        self._rooms[room.id] = _copy_room(room)
        return True

    def get_room(self, room_id: str) -> Room | None:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return _copy_room(room)

    def list_rooms(self) -> list[Room]:
        return [_copy_room(room) for room in self._rooms.values()]

    def update_room(self, room_id: str, **changes: Any) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if "round" in changes:
            changes["round"] = _copy_round(changes["round"])
        self._rooms[room_id] = replace(room, **changes)
        return True

    def delete_room(self, room_id: str) -> bool:
        room = self._rooms.pop(room_id, None)
        if room is None:
            return False
        for participant in room.participants:
            if self._participant_rooms.get(participant.token) == room_id:
                self._participant_rooms.pop(participant.token, None)
        log.debug("room_deleted", room_id=room_id, participants=len(room.participants))
        return True

    def add_participant(self, room_id: str, participant: Participant) -> bool:
        if room_id not in self._rooms:
            return False

        previous_room_id = self._participant_rooms.get(participant.token)
        if previous_room_id is not None:
            self.remove_participant(previous_room_id, participant.token)

        room = self._rooms[room_id]
        self._rooms[room_id] = replace(room, participants=room.participants + (participant,))
        self._participant_rooms[participant.token] = room_id
        return True

    def remove_participant(self, room_id: str, token: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False

        participants = tuple(p for p in room.participants if p.token != token)
        round_ = room.round
        if round_ is not None and not round_.revealed:
            round_ = _without_submission(round_, token)

        self._rooms[room_id] = replace(room, participants=participants, round=round_)
        if self._participant_rooms.get(token) == room_id:
            self._participant_rooms.pop(token, None)
        return True

    def update_participant(self, room_id: str, token: str, **changes: Any) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False

        participants = list(room.participants)
        for index, participant in enumerate(participants):
            if participant.token == token:
                participants[index] = replace(participant, **changes)
                break
        else:
            return False

        round_ = room.round
        if changes.get("is_connected") is False and round_ is not None and not round_.revealed:
            round_ = _without_submission(round_, token)

        self._rooms[room_id] = replace(room, participants=tuple(participants), round=round_)
        return True

    def get_participant_room(self, token: str) -> str | None:
        return self._participant_rooms.get(token)

    def get_participants(self, room_id: str) -> list[Participant]:
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return list(room.participants)

    def set_round(self, room_id: str, round_: Round | None) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        self._rooms[room_id] = replace(room, round=_copy_round(round_))
        return True

    def get_round(self, room_id: str) -> Round | None:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return _copy_round(room.round)

    def add_submission(self, room_id: str, token: str, value: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or room.round is None:
            return False
        submissions = dict(room.round.submissions)
        submissions[token] = value
        self._rooms[room_id] = replace(room, round=replace(room.round, submissions=submissions))
        return True

    def reveal_round(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or room.round is None:
            return False
        self._rooms[room_id] = replace(room, round=replace(room.round, revealed=True))
        return True

    def room_count(self) -> int:
        return len(self._rooms)

    def participant_count(self) -> int:
        return len(self._participant_rooms)

    def active_room_count(self) -> int:
        return sum(1 for room in self._rooms.values() if room.participants)


def create_store() -> SessionStore:
    return InMemorySessionStore()
