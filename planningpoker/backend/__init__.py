"""Backend package for the planning poker session server."""

from .config import BackendSettings, load_settings
from .engine import VotingRoundEngine
from .errors import ErrorKind, InvariantViolation, Outcome, SessionError
from .gateway import SessionGateway
from .rooms import RoomLifecycleManager
from .security import generate_token
from .state import DECK, build_participant, build_room, build_round
from .statistics import analyze_patterns, analyze_variance, compute_result
from .store import InMemorySessionStore, SessionStore, create_store

__all__ = [
    "analyze_patterns",
    "analyze_variance",
    "BackendSettings",
    "build_participant",
    "build_room",
    "build_round",
    "compute_result",
    "create_store",
    "DECK",
    "ErrorKind",
    "generate_token",
    "InMemorySessionStore",
    "InvariantViolation",
    "load_settings",
    "Outcome",
    "RoomLifecycleManager",
    "SessionError",
    "SessionGateway",
    "SessionStore",
    "VotingRoundEngine",
]
