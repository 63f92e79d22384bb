from relay.services.live_broadcast import EventBroadcaster, OutputChannel
from relay.services.registry import BroadcasterSession, ConnectionRegistry, SessionState
from relay.services.relay_state import (
    get_broadcaster,
    get_ledger,
    get_registry,
    get_tts,
    get_worker,
    set_broadcaster,
    set_ledger,
    set_registry,
    set_tts,
    set_worker,
)

__all__ = [
    "BroadcasterSession",
    "ConnectionRegistry",
    "EventBroadcaster",
    "OutputChannel",
    "SessionState",
    "get_broadcaster",
    "get_ledger",
    "get_registry",
    "get_tts",
    "get_worker",
    "set_broadcaster",
    "set_ledger",
    "set_registry",
    "set_tts",
    "set_worker",
]
