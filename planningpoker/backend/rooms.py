"""Room and participant rules layered over the session store."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from .errors import InvariantViolation, Outcome, conflict, illegal_state, invalid_input, not_found
from .models import Membership, Participant, Room
from .state import build_participant, build_room
from .store import SessionStore

log = structlog.get_logger(__name__)

DEFAULT_MAX_ROOM_NAME_LENGTH = 100
DEFAULT_MAX_PARTICIPANT_NAME_LENGTH = 30


@dataclass(frozen=True)
class Departure:
    room_id: str
    participant: Participant
    room_deleted: bool


class RoomLifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        max_room_name_length: int = DEFAULT_MAX_ROOM_NAME_LENGTH,
        max_participant_name_length: int = DEFAULT_MAX_PARTICIPANT_NAME_LENGTH,
    ) -> None:
        self._store = store
        self.max_room_name_length = max_room_name_length
        self.max_participant_name_length = max_participant_name_length

    def _clean_room_name(self, name: object) -> Outcome[str]:
        if not isinstance(name, str) or not name.strip():
            return invalid_input("Room name cannot be empty")
        trimmed = name.strip()
        if len(trimmed) > self.max_room_name_length:
            return invalid_input(f"Room name cannot exceed {self.max_room_name_length} characters")
        return Outcome.success(trimmed)

    def _clean_participant_name(self, name: object) -> Outcome[str]:
        if not isinstance(name, str) or not name.strip():
            return invalid_input("Player name cannot be empty")
        trimmed = name.strip()
        if len(trimmed) > self.max_participant_name_length:
            return invalid_input(f"Player name must be {self.max_participant_name_length} characters or less")
        return Outcome.success(trimmed)

    def create_room(self, name: str) -> Outcome[Room]:
        """Create a room, or hand back the existing one with the same trimmed name."""
        cleaned = self._clean_room_name(name)
        if not cleaned.ok:
            return Outcome(error=cleaned.error)

        existing = self._store.get_room(cleaned.value)
        if existing is not None:
            return Outcome.success(existing)

        room = build_room(cleaned.value)
        self._store.create_room(room)
        log.info("room_created", room_id=room.id)
        return Outcome.success(self._require_room(room.id))

    def get_room(self, room_id: str) -> Room | None:
        return self._store.get_room(room_id)

    def room_of(self, token: str) -> str | None:
        return self._store.get_participant_room(token)

    def get_participant(self, token: str) -> Participant | None:
        room_id = self._store.get_participant_room(token)
        if room_id is None:
            return None
        room = self._store.get_room(room_id)
        return room.find_participant(token) if room is not None else None

    def list_rooms(self) -> list[Room]:
        return self._store.list_rooms()

    def join_room(self, room_id: str, participant_name: str) -> Outcome[Membership]:
        room = self._store.get_room(room_id)
        if room is None:
            return not_found("Room not found")

        cleaned = self._clean_participant_name(participant_name)
        if not cleaned.ok:
            return Outcome(error=cleaned.error)
        name = cleaned.value

        match = next((p for p in room.participants if p.name.lower() == name.lower()), None)
        if match is not None:
            if match.is_connected:
                return conflict("Player name already taken in this room")
            return self._reactivate(room_id, match)

        participant = build_participant(name)
        if not self._store.add_participant(room_id, participant):
            raise InvariantViolation(f"room {room_id!r} vanished while adding a participant")
        log.info("participant_joined", room_id=room_id, token=participant.token)
        return Outcome.success(Membership(room=self._require_room(room_id), participant=participant))

    def join_or_create(self, room_name: str, participant_name: str) -> Outcome[Membership]:
        """Join ``room_name``, creating it first when it does not exist yet.

        Both names are validated before anything is written so a rejected
        join never leaves a freshly created, empty room behind.
        """
        room_name_check = self._clean_room_name(room_name)
        if not room_name_check.ok:
            return Outcome(error=room_name_check.error)
        participant_name_check = self._clean_participant_name(participant_name)
        if not participant_name_check.ok:
            return Outcome(error=participant_name_check.error)

        created = self.create_room(room_name_check.value)
        if not created.ok:
            return Outcome(error=created.error)
        return self.join_room(created.value.id, participant_name_check.value)

    def reattach(self, room_id: str, token: str) -> Outcome[Membership]:
        """Bring an inactive participant back by the token they were issued."""
        room = self._store.get_room(room_id)
        if room is None:
            return not_found("Room not found")
        participant = room.find_participant(token)
        if participant is None:
            return not_found("Player not found in room")
        if participant.is_connected:
            return conflict("Player is already connected")
        return self._reactivate(room_id, participant)

    def _reactivate(self, room_id: str, participant: Participant) -> Outcome[Membership]:
        if not self._store.update_participant(room_id, participant.token, is_connected=True):
            raise InvariantViolation(f"participant {participant.token!r} vanished from room {room_id!r}")
        room = self._require_room(room_id)
        log.info("participant_reconnected", room_id=room_id, token=participant.token)
        return Outcome.success(Membership(room=room, participant=room.find_participant(participant.token)))

    def leave_room(self, token: str) -> Outcome[Departure]:
        room_id = self._store.get_participant_room(token)
        if room_id is None:
            return not_found("Player not in any room")
        room = self._require_room(room_id)
        participant = room.find_participant(token)
        if participant is None:
            raise InvariantViolation(f"reverse map points {token!r} at {room_id!r} but the room lacks it")
        return Outcome.success(self._depart(room_id, participant))

    def remove_participant(self, requester_token: str, target_token: str) -> Outcome[Departure]:
        """Remove an inactive participant from the requester's own room."""
        room_id = self._store.get_participant_room(requester_token)
        if room_id is None:
            return not_found("You are not in any room")
        if self._store.get_participant_room(target_token) != room_id:
            return not_found("Player not found in your room")

        target = self._require_room(room_id).find_participant(target_token)
        if target is None:
            return not_found("Player not found in room")
        if target.is_connected:
            return illegal_state("Cannot remove connected players")

        departure = self._depart(room_id, target)
        log.info("participant_removed", room_id=room_id, token=target_token, removed_by=requester_token)
        return Outcome.success(departure)

    def _depart(self, room_id: str, participant: Participant) -> Departure:
        if not self._store.remove_participant(room_id, participant.token):
            raise InvariantViolation(f"room {room_id!r} vanished while removing a participant")
        room_deleted = False
        if not self._store.get_participants(room_id):
            room_deleted = self._store.delete_room(room_id)
        log.info("participant_left", room_id=room_id, token=participant.token, room_deleted=room_deleted)
        return Departure(room_id=room_id, participant=participant, room_deleted=room_deleted)

    def update_connection_status(self, token: str, is_connected: bool) -> Outcome[str]:
        room_id = self._store.get_participant_room(token)
        if room_id is None:
            return not_found("Player not in any room")
        if not self._store.update_participant(room_id, token, is_connected=is_connected):
            return not_found("Player not found in room")
        return Outcome.success(room_id)

    def _require_room(self, room_id: str) -> Room:
        room = self._store.get_room(room_id)
        if room is None:
            raise InvariantViolation(f"room {room_id!r} missing right after it was written")
        return room
