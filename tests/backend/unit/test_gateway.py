import asyncio
from typing import Any

import pytest

from planningpoker.backend.engine import VotingRoundEngine
from planningpoker.backend.errors import InvariantViolation
from planningpoker.backend.gateway import Outbound, SessionGateway
from planningpoker.backend.rooms import RoomLifecycleManager
from planningpoker.backend.store import InMemorySessionStore


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, connection_id: str, message: dict[str, Any]) -> None:
        self.sent.append((connection_id, message))


def _gateway() -> tuple[SessionGateway, InMemorySessionStore, RecordingTransport]:
    store = InMemorySessionStore()
    transport = RecordingTransport()
    gateway = SessionGateway(
        lifecycle=RoomLifecycleManager(store),
        engine=VotingRoundEngine(store),
        transport=transport,
    )
    return gateway, store, transport


def _types(outbox: list[Outbound], connection_id: str) -> list[str]:
    return [o.message["type"] for o in outbox if o.connection_id == connection_id]


def _data(outbox: list[Outbound], connection_id: str, event: str) -> dict[str, Any]:
    for outbound in outbox:
        if outbound.connection_id == connection_id and outbound.message["type"] == event:
            return outbound.message["data"]
    raise AssertionError(f"{event} not sent to {connection_id}")


def _join(gateway: SessionGateway, connection_id: str, name: str, room: str = "alpha") -> list[Outbound]:
    return gateway.dispatch(connection_id, {"type": "join", "payload": {"roomId": room, "participantName": name}})


def test_join_auto_creates_room_and_binds_connection() -> None:
    gateway, store, _ = _gateway()

    outbox = _join(gateway, "c1", "Ada")

    assert _types(outbox, "c1") == ["room-joined", "selection-status-update"]
    joined = _data(outbox, "c1", "room-joined")
    assert joined["room"]["id"] == "alpha"
    assert joined["participant"]["name"] == "Ada"
    assert "result" not in joined
    assert gateway.bound_token("c1") == joined["participant"]["token"]
    assert store.get_room("alpha") is not None


def test_join_notifies_peers_only_in_same_room() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c3", "Cy", room="beta")

    outbox = _join(gateway, "c2", "Bob")

    assert _types(outbox, "c1") == ["player-joined", "selection-status-update"]
    assert _types(outbox, "c3") == []
    assert _data(outbox, "c1", "player-joined")["participant"]["name"] == "Bob"


def test_join_with_taken_name_errors_only_to_caller() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")

    outbox = _join(gateway, "c2", "ada")

    assert [o.connection_id for o in outbox] == ["c2"]
    assert outbox[0].message == {
        "type": "error",
        "data": {"message": "Player name already taken in this room", "kind": "conflict"},
    }
    assert gateway.bound_token("c2") is None


def test_join_rejects_malformed_payload() -> None:
    gateway, store, _ = _gateway()

    missing = gateway.dispatch("c1", {"type": "join", "payload": {"participantName": "Ada"}})
    no_name = gateway.dispatch("c1", {"type": "join", "payload": {"roomId": "alpha"}})

    assert _data(missing, "c1", "error")["kind"] == "invalid_input"
    assert _data(no_name, "c1", "error")["kind"] == "invalid_input"
    assert store.room_count() == 0


def test_unknown_and_malformed_messages_are_invalid_input() -> None:
    gateway, _, _ = _gateway()

    unknown = gateway.dispatch("c1", {"type": "dance"})
    not_a_dict = gateway.dispatch("c1", None)

    assert _data(unknown, "c1", "error")["message"] == "Unknown action: dance"
    assert _data(not_a_dict, "c1", "error")["kind"] == "invalid_input"


def test_actions_from_unbound_connection_are_not_found() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")

    for action in ("start-round", "reveal-cards", "leave-room"):
        outbox = gateway.dispatch("stranger", {"type": action})
        assert [o.connection_id for o in outbox] == ["stranger"]
        assert _data(outbox, "stranger", "error")["kind"] == "not_found"


def test_full_round_flow() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")

    started = gateway.dispatch("c1", {"type": "start-round"})
    assert _types(started, "c2") == ["round-started", "selection-status-update"]

    first = gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "3"}})
    statuses = _data(first, "c2", "selection-status-update")["participants"]
    assert [(s["name"], s["hasSubmitted"]) for s in statuses] == [("Ada", True), ("Bob", False)]
    assert "all-submitted" not in _types(first, "c1")

    second = gateway.dispatch("c2", {"type": "select-card", "payload": {"value": "8"}})
    assert _types(second, "c1") == ["selection-status-update", "all-submitted"]

    revealed = gateway.dispatch("c2", {"type": "reveal-cards"})
    data = _data(revealed, "c1", "cards-revealed")
    assert data["result"]["statistics"] == {"average": 5.5, "median": "5.5", "range": ["3", "8"], "hasVariance": True}
    assert data["variance"]["level"] == "moderate"
    assert data["patterns"]["consensus"] is False


def test_values_stay_hidden_until_reveal() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    gateway.dispatch("c1", {"type": "start-round"})
    gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "13"}})

    outbox = _join(gateway, "c2", "Bob")

    statuses = _data(outbox, "c1", "selection-status-update")["participants"]
    assert all(set(status) == {"token", "name", "hasSubmitted", "isConnected"} for status in statuses)
    room = _data(outbox, "c2", "room-joined")["room"]
    assert "submissions" not in room["round"]
    assert room["round"]["submittedTokens"] == [gateway.bound_token("c1")]


def test_all_submitted_fires_once_per_completion() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    gateway.dispatch("c1", {"type": "start-round"})

    first = gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "3"}})
    again = gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "5"}})

    assert "all-submitted" in _types(first, "c1")
    assert "all-submitted" not in _types(again, "c1")


def test_disconnect_marks_inactive_and_can_complete_round() -> None:
    gateway, store, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    gateway.dispatch("c1", {"type": "start-round"})
    gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "3"}})
    bob_token = gateway.bound_token("c2")

    outbox = gateway.disconnect("c2")

    assert _types(outbox, "c1") == ["player-left", "selection-status-update", "all-submitted"]
    assert _data(outbox, "c1", "player-left") == {"token": bob_token}
    assert store.get_room("alpha").find_participant(bob_token).is_connected is False
    assert gateway.bound_token("c2") is None
    assert gateway.disconnect("c2") == []


def test_rejoin_by_name_reuses_token_and_sends_result_after_reveal() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    gateway.dispatch("c1", {"type": "start-round"})
    gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "3"}})
    gateway.dispatch("c2", {"type": "select-card", "payload": {"value": "5"}})
    gateway.dispatch("c1", {"type": "reveal-cards"})
    bob_token = gateway.bound_token("c2")
    gateway.disconnect("c2")

    outbox = _join(gateway, "c9", "Bob")

    joined = _data(outbox, "c9", "room-joined")
    assert joined["participant"]["token"] == bob_token
    assert {card["name"]: card["value"] for card in joined["result"]["cards"]} == {"Ada": "3", "Bob": "5"}
    assert joined["room"]["round"]["submissions"] == {gateway.bound_token("c1"): "3", bob_token: "5"}


def test_rejoin_by_token() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    token = gateway.bound_token("c1")
    gateway.disconnect("c1")

    outbox = gateway.dispatch("c2", {"type": "join", "payload": {"roomId": "alpha", "participantToken": token}})
    unknown = gateway.dispatch("c3", {"type": "join", "payload": {"roomId": "alpha", "participantToken": "bogus"}})

    assert _data(outbox, "c2", "room-joined")["participant"]["token"] == token
    assert gateway.bound_token("c2") == token
    assert _data(unknown, "c3", "error")["kind"] == "not_found"


def test_join_from_bound_connection_releases_previous_participant() -> None:
    gateway, store, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    old_token = gateway.bound_token("c1")

    outbox = _join(gateway, "c1", "Ada", room="beta")

    assert _data(outbox, "c2", "player-left") == {"token": old_token}
    assert store.get_room("alpha").find_participant(old_token).is_connected is False
    assert gateway.bound_token("c1") != old_token
    assert gateway.connection_for(old_token) is None


def test_select_card_after_reveal_rebroadcasts_result() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    gateway.dispatch("c1", {"type": "start-round"})
    gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "3"}})
    gateway.dispatch("c2", {"type": "select-card", "payload": {"value": "8"}})
    gateway.dispatch("c1", {"type": "reveal-cards"})

    outbox = gateway.dispatch("c2", {"type": "select-card", "payload": {"value": "3"}})

    data = _data(outbox, "c1", "cards-revealed")
    assert data["result"]["statistics"]["average"] == 3
    assert data["patterns"]["consensus"] is True


def test_select_card_rejects_value_outside_deck() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    gateway.dispatch("c1", {"type": "start-round"})

    outbox = gateway.dispatch("c1", {"type": "select-card", "payload": {"value": "42"}})
    missing = gateway.dispatch("c1", {"type": "select-card", "payload": {}})

    assert _data(outbox, "c1", "error")["kind"] == "invalid_input"
    assert _data(missing, "c1", "error")["kind"] == "invalid_input"


def test_start_round_rejects_when_room_emptied() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")

    gateway.dispatch("c1", {"type": "leave-room"})
    outbox = gateway.dispatch("c1", {"type": "start-round"})

    assert _data(outbox, "c1", "error")["kind"] == "not_found"


def test_leave_room_notifies_peers_and_unbinds() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    ada_token = gateway.bound_token("c1")

    outbox = gateway.dispatch("c1", {"type": "leave-room"})

    assert _types(outbox, "c1") == []
    assert _data(outbox, "c2", "player-left") == {"token": ada_token}
    assert gateway.bound_token("c1") is None


def test_remove_player_only_inactive_targets() -> None:
    gateway, store, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    bob_token = gateway.bound_token("c2")

    rejected = gateway.dispatch("c1", {"type": "remove-player", "payload": {"targetToken": bob_token}})
    assert [o.connection_id for o in rejected] == ["c1"]
    assert _data(rejected, "c1", "error") == {"message": "Cannot remove connected players", "kind": "illegal_state"}

    gateway.disconnect("c2")
    removed = gateway.dispatch("c1", {"type": "remove-player", "payload": {"targetToken": bob_token}})

    assert _data(removed, "c1", "player-removed") == {
        "token": bob_token,
        "name": "Bob",
        "removedBy": gateway.bound_token("c1"),
    }
    assert store.get_room("alpha").find_participant(bob_token) is None


def test_invariant_violation_is_reported_as_internal_error(monkeypatch) -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")

    def explode(room_id: str) -> None:
        raise InvariantViolation("boom")

    monkeypatch.setattr(gateway._engine, "start_round", explode)
    outbox = gateway.dispatch("c1", {"type": "start-round"})

    assert _data(outbox, "c1", "error")["message"] == "Internal server error"


def test_connection_stats() -> None:
    gateway, _, _ = _gateway()
    _join(gateway, "c1", "Ada")
    _join(gateway, "c2", "Bob")
    _join(gateway, "c3", "Cy", room="beta")
    gateway.disconnect("c2")

    stats = gateway.connection_stats()

    assert stats["totalConnections"] == 2
    assert stats["participantsConnected"] == 2
    assert stats["participantsDisconnected"] == 1
    assert {r["roomId"]: r["disconnectedCount"] for r in stats["rooms"]} == {"alpha": 1, "beta": 0}


def test_handle_sends_outbox_through_transport() -> None:
    gateway, _, transport = _gateway()

    async def scenario() -> None:
        await gateway.handle("c1", {"type": "join", "payload": {"roomId": "alpha", "participantName": "Ada"}})
        await gateway.drain()
        await gateway.connection_closed("c1")

    asyncio.run(scenario())

    assert [message["type"] for _, message in transport.sent] == ["room-joined", "selection-status-update"]
    assert gateway.bound_token("c1") is None


class StallingTransport(RecordingTransport):
    def __init__(self, stalled: str) -> None:
        super().__init__()
        self.stalled = stalled
        self.release = asyncio.Event()

    async def send(self, connection_id: str, message: dict[str, Any]) -> None:
        if connection_id == self.stalled:
            await self.release.wait()
        await super().send(connection_id, message)


def test_stalled_connection_does_not_hold_up_other_rooms() -> None:
    store = InMemorySessionStore()

    async def scenario() -> StallingTransport:
        transport = StallingTransport(stalled="slow")
        gateway = SessionGateway(
            lifecycle=RoomLifecycleManager(store),
            engine=VotingRoundEngine(store),
            transport=transport,
        )
        await gateway.handle("slow", {"type": "join", "payload": {"roomId": "alpha", "participantName": "Ada"}})
        await gateway.handle("fast", {"type": "join", "payload": {"roomId": "beta", "participantName": "Bob"}})
        await gateway.handle("slow", {"type": "start-round"})

        await asyncio.wait_for(gateway.handle("fast", {"type": "start-round"}), 1)
        await asyncio.wait_for(gateway._outbound.drain_connection("fast"), 1)

        assert store.get_round("beta") is not None
        assert gateway._outbound.pending("slow") > 0
        transport.release.set()
        await asyncio.wait_for(gateway.drain(), 1)
        return transport

    transport = asyncio.run(scenario())

    fast = [message["type"] for connection_id, message in transport.sent if connection_id == "fast"]
    slow = [message["type"] for connection_id, message in transport.sent if connection_id == "slow"]
    assert fast == ["room-joined", "selection-status-update", "round-started", "selection-status-update"]
    assert slow == ["room-joined", "selection-status-update", "round-started", "selection-status-update"]


@pytest.mark.parametrize("name", ["", "   ", "x" * 31])
def test_join_rejects_bad_participant_names(name: str) -> None:
    gateway, store, _ = _gateway()

    outbox = _join(gateway, "c1", name)

    assert _data(outbox, "c1", "error")["kind"] == "invalid_input"
    assert store.room_count() == 0
