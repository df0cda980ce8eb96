"""Relay between live connections and the room/round layers.

Each connection is bound to at most one participant token. Inbound actions
are applied synchronously and produce an outbox, so no two actions ever
interleave their store mutations. The outbox is handed to per-connection
send queues and never awaited by the action itself.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .engine import VotingRoundEngine
from .errors import ErrorKind, InvariantViolation, Outcome, SessionError, invalid_input, not_found
from .models import EstimationPatterns, Participant, Result, Room, SelectionStatus, VarianceAnalysis
from .rooms import Departure, RoomLifecycleManager

log = structlog.get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"


class Transport(Protocol):
    async def send(self, connection_id: str, message: dict[str, Any]) -> None:
        """Deliver one message to one live connection."""


class JoinPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    participant_name: str | None = Field(default=None, alias="participantName")
    participant_token: str | None = Field(default=None, alias="participantToken", min_length=1)


class SelectCardPayload(BaseModel):
    value: str


class RemovePlayerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_token: str = Field(alias="targetToken", min_length=1)


@dataclass(frozen=True)
class Outbound:
    connection_id: str
    message: dict[str, Any]


class OutboundQueues:
    """One send queue and sender task per connection.

    Messages for a connection go out in the order they were posted, and a
    connection that stops reading only backs up its own queue.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = {}
        self._senders: dict[str, asyncio.Task[None]] = {}

    def post(self, outbox: list[Outbound]) -> None:
        for outbound in outbox:
            self._queue_for(outbound.connection_id).put_nowait(outbound.message)

    def close(self, connection_id: str) -> None:
        self._queues.pop(connection_id, None)
        sender = self._senders.pop(connection_id, None)
        if sender is not None and not sender.done():
            sender.cancel()

    async def drain(self) -> None:
        """Wait until every queued message has been handed to the transport."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def drain_connection(self, connection_id: str) -> None:
        queue = self._queues.get(connection_id)
        if queue is not None:
            await queue.join()

    def pending(self, connection_id: str) -> int:
        queue = self._queues.get(connection_id)
        return queue.qsize() if queue is not None else 0

    def _queue_for(self, connection_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue = self._queues.get(connection_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[connection_id] = queue
            self._senders[connection_id] = asyncio.create_task(
                self._run_sender(connection_id, queue), name=f"send:{connection_id}"
            )
        return queue

    async def _run_sender(self, connection_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            message = await queue.get()
            try:
                await self._transport.send(connection_id, message)
            except Exception:
                log.exception("send_failed", connection_id=connection_id, message_type=message.get("type"))
            finally:
                queue.task_done()


def participant_payload(participant: Participant) -> dict[str, Any]:
    return {
        "token": participant.token,
        "name": participant.name,
        "isConnected": participant.is_connected,
        "joinedAt": participant.joined_at.isoformat(),
    }


def room_payload(room: Room) -> dict[str, Any]:
    round_state: dict[str, Any] | None = None
    if room.round is not None:
        round_state = {
            "revealed": room.round.revealed,
            "startedAt": room.round.started_at.isoformat() if room.round.started_at else None,
            "submittedTokens": list(room.round.submissions),
        }
        # Raw values stay server-side until the round is revealed.
        if room.round.revealed:
            round_state["submissions"] = dict(room.round.submissions)
    return {
        "id": room.id,
        "name": room.name,
        "createdAt": room.created_at.isoformat(),
        "participants": [participant_payload(p) for p in room.participants],
        "round": round_state,
    }


def result_payload(result: Result) -> dict[str, Any]:
    return {
        "cards": [{"token": c.token, "name": c.name, "value": c.value} for c in result.cards],
        "statistics": {
            "average": result.statistics.average,
            "median": result.statistics.median,
            "range": list(result.statistics.range),
            "hasVariance": result.statistics.has_variance,
        },
    }


def variance_payload(analysis: VarianceAnalysis | None) -> dict[str, Any] | None:
    if analysis is None:
        return None
    return {
        "hasVariance": analysis.has_variance,
        "level": analysis.level,
        "discussionPrompt": analysis.discussion_prompt,
        "highlightedCards": list(analysis.highlighted_cards),
    }


def patterns_payload(patterns: EstimationPatterns | None) -> dict[str, Any] | None:
    if patterns is None:
        return None
    return {
        "consensus": patterns.consensus,
        "majorityCard": patterns.majority_card,
        "outliers": list(patterns.outliers),
        "colorCoding": dict(patterns.color_coding),
    }


def selection_payload(statuses: list[SelectionStatus]) -> list[dict[str, Any]]:
    return [
        {"token": s.token, "name": s.name, "hasSubmitted": s.has_submitted, "isConnected": s.is_connected}
        for s in statuses
    ]


def _parse(model: type[BaseModel], payload: object) -> Outcome[Any]:
    try:
        return Outcome.success(model.model_validate(payload if payload is not None else {}))
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        return invalid_input(f"Invalid {field}: {first.get('msg', 'invalid value')}")


class SessionGateway:
    def __init__(self, lifecycle: RoomLifecycleManager, engine: VotingRoundEngine, transport: Transport) -> None:
        self._lifecycle = lifecycle
        self._engine = engine
        self._connection_tokens: dict[str, str] = {}
        self._token_connections: dict[str, str] = {}
        # rooms whose current round has already been announced as complete
        self._complete_rooms: set[str] = set()
        self._outbound = OutboundQueues(transport)
        self._handlers: dict[str, Callable[[str, Any], list[Outbound]]] = {
            "join": self._on_join,
            "start-round": self._on_start_round,
            "select-card": self._on_select_card,
            "reveal-cards": self._on_reveal_cards,
            "leave-room": self._on_leave_room,
            "remove-player": self._on_remove_player,
        }

    async def handle(self, connection_id: str, message: object) -> None:
        self._outbound.post(self.dispatch(connection_id, message))

    async def connection_closed(self, connection_id: str) -> None:
        self._outbound.post(self.disconnect(connection_id))
        self._outbound.close(connection_id)

    async def drain(self) -> None:
        await self._outbound.drain()

    def dispatch(self, connection_id: str, message: object) -> list[Outbound]:
        """Apply one inbound action and return the messages it produces."""
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            return [self._error(connection_id, invalid_input("Message must be an object with a type").error)]
        action = message["type"]
        handler = self._handlers.get(action)
        if handler is None:
            return [self._error(connection_id, invalid_input(f"Unknown action: {action}").error)]

        try:
            return handler(connection_id, message.get("payload"))
        except InvariantViolation:
            log.exception("invariant_violation", action=action, connection_id=connection_id)
            return [self._error(connection_id, SessionError(ErrorKind.ILLEGAL_STATE, INTERNAL_ERROR_MESSAGE))]

    def disconnect(self, connection_id: str) -> list[Outbound]:
        token = self._unbind_connection(connection_id)
        if token is None:
            return []
        status = self._lifecycle.update_connection_status(token, False)
        if not status.ok:
            return []
        room_id = status.value
        log.info("participant_disconnected", room_id=room_id, token=token)
        outbox: list[Outbound] = []
        self._broadcast(outbox, room_id, "player-left", {"token": token})
        self._broadcast_selection_status(outbox, room_id)
        self._check_completion(outbox, room_id)
        return outbox

    def bound_token(self, connection_id: str) -> str | None:
        return self._connection_tokens.get(connection_id)

    def connection_for(self, token: str) -> str | None:
        return self._token_connections.get(token)

    def connection_stats(self) -> dict[str, Any]:
        rooms = []
        for room in self._lifecycle.list_rooms():
            connected = sum(1 for p in room.participants if p.is_connected)
            rooms.append(
                {
                    "roomId": room.id,
                    "participantCount": len(room.participants),
                    "connectedCount": connected,
                    "disconnectedCount": len(room.participants) - connected,
                }
            )
        return {
            "totalConnections": len(self._connection_tokens),
            "participantsConnected": sum(r["connectedCount"] for r in rooms),
            "participantsDisconnected": sum(r["disconnectedCount"] for r in rooms),
            "rooms": rooms,
        }

    def _on_join(self, connection_id: str, payload: Any) -> list[Outbound]:
        parsed = _parse(JoinPayload, payload)
        if not parsed.ok:
            return [self._error(connection_id, parsed.error)]
        request: JoinPayload = parsed.value

        if request.participant_token is not None:
            joined = self._lifecycle.reattach(request.room_id.strip(), request.participant_token)
        elif request.participant_name is not None:
            joined = self._lifecycle.join_or_create(request.room_id, request.participant_name)
        else:
            joined = invalid_input("Player name is required")
        if not joined.ok:
            return [self._error(connection_id, joined.error)]

        membership = joined.value
        room_id = membership.room.id
        participant = membership.participant
        outbox: list[Outbound] = []

        previous = self._connection_tokens.get(connection_id)
        if previous is not None and previous != participant.token:
            outbox.extend(self.disconnect(connection_id))
        self._bind(connection_id, participant.token)

        room = self._lifecycle.get_room(room_id) or membership.room
        joined_data: dict[str, Any] = {"room": room_payload(room), "participant": participant_payload(participant)}
        result = self._engine.current_result(room_id)
        if result is not None:
            joined_data["result"] = result_payload(result)
        outbox.append(self._message(connection_id, "room-joined", joined_data))

        self._broadcast(outbox, room_id, "player-joined", {"participant": participant_payload(participant)}, exclude=connection_id)
        self._broadcast_selection_status(outbox, room_id)
        self._check_completion(outbox, room_id)
        return outbox

    def _on_start_round(self, connection_id: str, payload: Any) -> list[Outbound]:
        located = self._locate(connection_id)
        if not located.ok:
            return [self._error(connection_id, located.error)]
        _, room_id = located.value

        started = self._engine.start_round(room_id)
        if not started.ok:
            return [self._error(connection_id, started.error)]

        self._complete_rooms.discard(room_id)
        outbox: list[Outbound] = []
        self._broadcast(outbox, room_id, "round-started", {})
        self._broadcast_selection_status(outbox, room_id)
        self._check_completion(outbox, room_id)
        return outbox

    def _on_select_card(self, connection_id: str, payload: Any) -> list[Outbound]:
        located = self._locate(connection_id)
        if not located.ok:
            return [self._error(connection_id, located.error)]
        token, room_id = located.value

        parsed = _parse(SelectCardPayload, payload)
        if not parsed.ok:
            return [self._error(connection_id, parsed.error)]
        submitted = self._engine.submit_value(room_id, token, parsed.value.value)
        if not submitted.ok:
            return [self._error(connection_id, submitted.error)]

        outbox: list[Outbound] = []
        self._broadcast_selection_status(outbox, room_id)
        self._check_completion(outbox, room_id)
        if self._engine.current_result(room_id) is not None:
            # Adjusting a card after reveal recalculates the shared result.
            revealed = self._engine.reveal_round(room_id)
            self._broadcast(outbox, room_id, "cards-revealed", self._revealed_data(room_id, revealed.value))
        return outbox

    def _on_reveal_cards(self, connection_id: str, payload: Any) -> list[Outbound]:
        located = self._locate(connection_id)
        if not located.ok:
            return [self._error(connection_id, located.error)]
        _, room_id = located.value

        revealed = self._engine.reveal_round(room_id)
        if not revealed.ok:
            return [self._error(connection_id, revealed.error)]

        outbox: list[Outbound] = []
        self._broadcast(outbox, room_id, "cards-revealed", self._revealed_data(room_id, revealed.value))
        return outbox

    def _on_leave_room(self, connection_id: str, payload: Any) -> list[Outbound]:
        token = self._connection_tokens.get(connection_id)
        if token is None:
            return [self._error(connection_id, not_found("Player session not found").error)]

        left = self._lifecycle.leave_room(token)
        if not left.ok:
            return [self._error(connection_id, left.error)]
        self._unbind_connection(connection_id)
        return self._after_departure(left.value, "player-left", {"token": token})

    def _on_remove_player(self, connection_id: str, payload: Any) -> list[Outbound]:
        located = self._locate(connection_id)
        if not located.ok:
            return [self._error(connection_id, located.error)]
        token, _ = located.value

        parsed = _parse(RemovePlayerPayload, payload)
        if not parsed.ok:
            return [self._error(connection_id, parsed.error)]
        target_token = parsed.value.target_token

        removed = self._lifecycle.remove_participant(token, target_token)
        if not removed.ok:
            return [self._error(connection_id, removed.error)]

        target_connection = self._token_connections.get(target_token)
        if target_connection is not None:
            self._unbind_connection(target_connection)
        departure = removed.value
        data = {"token": target_token, "name": departure.participant.name, "removedBy": token}
        return self._after_departure(departure, "player-removed", data)

    def _after_departure(self, departure: Departure, event: str, data: dict[str, Any]) -> list[Outbound]:
        outbox: list[Outbound] = []
        if departure.room_deleted:
            self._complete_rooms.discard(departure.room_id)
            return outbox
        self._broadcast(outbox, departure.room_id, event, data)
        self._broadcast_selection_status(outbox, departure.room_id)
        self._check_completion(outbox, departure.room_id)
        return outbox

    def _locate(self, connection_id: str) -> Outcome[tuple[str, str]]:
        token = self._connection_tokens.get(connection_id)
        if token is None:
            return not_found("Player session not found. Please rejoin the room.")
        room_id = self._lifecycle.room_of(token)
        if room_id is None:
            return not_found("Player not in any room")
        return Outcome.success((token, room_id))

    def _bind(self, connection_id: str, token: str) -> None:
        self._connection_tokens[connection_id] = token
        self._token_connections[token] = connection_id

    def _unbind_connection(self, connection_id: str) -> str | None:
        token = self._connection_tokens.pop(connection_id, None)
        if token is not None and self._token_connections.get(token) == connection_id:
            self._token_connections.pop(token, None)
        return token

    def _revealed_data(self, room_id: str, result: Result) -> dict[str, Any]:
        return {
            "result": result_payload(result),
            "variance": variance_payload(self._engine.variance_analysis(room_id)),
            "patterns": patterns_payload(self._engine.estimation_patterns(room_id)),
        }

    def _check_completion(self, outbox: list[Outbound], room_id: str) -> None:
        if not self._engine.is_complete(room_id):
            self._complete_rooms.discard(room_id)
            return
        if room_id in self._complete_rooms:
            return
        self._complete_rooms.add(room_id)
        log.info("all_submitted", room_id=room_id)
        self._broadcast(outbox, room_id, "all-submitted", {})

    def _broadcast_selection_status(self, outbox: list[Outbound], room_id: str) -> None:
        statuses = selection_payload(self._engine.selection_status(room_id))
        self._broadcast(outbox, room_id, "selection-status-update", {"participants": statuses})

    def _broadcast(
        self,
        outbox: list[Outbound],
        room_id: str,
        event: str,
        data: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        room = self._lifecycle.get_room(room_id)
        if room is None:
            return
        for participant in room.participants:
            connection_id = self._token_connections.get(participant.token)
            if connection_id is None or connection_id == exclude:
                continue
            outbox.append(self._message(connection_id, event, data))

    @staticmethod
    def _message(connection_id: str, event: str, data: dict[str, Any]) -> Outbound:
        return Outbound(connection_id=connection_id, message={"type": event, "data": data})

    def _error(self, connection_id: str, error: SessionError) -> Outbound:
        log.info("action_rejected", connection_id=connection_id, kind=error.kind.value, reason=error.message)
        return self._message(connection_id, "error", {"message": error.message, "kind": error.kind.value})
