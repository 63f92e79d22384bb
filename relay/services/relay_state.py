"""
Shared in-process relay objects (registry, broadcaster, worker, TTS, ledger).

Set at app lifespan start; read by API routes.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from relay.services.gift_ledger import GiftLedger
from relay.services.live_broadcast import EventBroadcaster
from relay.services.registry import ConnectionRegistry
from relay.services.tts import TTSGateway

if TYPE_CHECKING:
    from upstream.main import ConnectionWorker

_registry: Optional[ConnectionRegistry] = None
_broadcaster: Optional[EventBroadcaster] = None
_worker: Optional["ConnectionWorker"] = None
_tts: Optional[TTSGateway] = None
_ledger: Optional[GiftLedger] = None


def set_registry(r: ConnectionRegistry) -> None:
    global _registry
    _registry = r


def get_registry() -> ConnectionRegistry:
    if _registry is None:
        raise RuntimeError("Relay state not initialized")
    return _registry


def set_broadcaster(b: EventBroadcaster) -> None:
    global _broadcaster
    _broadcaster = b


def get_broadcaster() -> EventBroadcaster:
    if _broadcaster is None:
        raise RuntimeError("Relay state not initialized")
    return _broadcaster


def set_worker(w: "ConnectionWorker") -> None:
    global _worker
    _worker = w


def get_worker() -> "ConnectionWorker":
    if _worker is None:
        raise RuntimeError("Relay state not initialized")
    return _worker


def set_tts(t: TTSGateway) -> None:
    global _tts
    _tts = t


def get_tts() -> TTSGateway:
    if _tts is None:
        raise RuntimeError("Relay state not initialized")
    return _tts


def set_ledger(ledger: GiftLedger) -> None:
    global _ledger
    _ledger = ledger


def get_ledger() -> GiftLedger:
    if _ledger is None:
        raise RuntimeError("Relay state not initialized")
    return _ledger
