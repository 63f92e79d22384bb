"""Wire schemas: normalized stream events and API response bodies.

Field names are snake_case in Python and camelCase on the wire, which is what
the existing overlay/widget clients read.
"""
import time
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EventType(str, Enum):
    COMMENT = "comment"
    GIFT = "gift"
    LIKE = "like"
    FOLLOW = "follow"
    SHARE = "share"
    ROOM_STATS = "roomStats"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Comment(WireModel):
    user: str
    text: str
    timestamp: int
    profile_pic_url: Optional[str] = None
    audio_url: Optional[str] = None


class Gift(WireModel):
    id: str
    user: str
    gift_name: str
    gift_id: int
    repeat_count: int = 1
    diamond_count: int = 0
    timestamp: int
    emoji: str = ""
    profile_pic_url: Optional[str] = None


class Like(WireModel):
    user: str
    like_count: int = 1
    total_like_count: int = 0
    timestamp: int


class Follow(WireModel):
    user: str
    timestamp: int
    profile_pic_url: Optional[str] = None


class Share(WireModel):
    user: str
    timestamp: int


class RoomStats(WireModel):
    viewer_count: int = 0
    like_count: int = 0
    total_viewer_count: int = 0


class ConnectionSignal(WireModel):
    username: str


class ErrorSignal(WireModel):
    message: str


EventPayload = Union[Comment, Gift, Like, Follow, Share, RoomStats, ConnectionSignal, ErrorSignal]


class StreamEvent(BaseModel):
    """Envelope sent to subscribers: {type, data, timestamp}."""

    type: EventType
    data: dict[str, Any]
    timestamp: int

    @classmethod
    def of(cls, event_type: EventType, payload: EventPayload) -> "StreamEvent":
        return cls(type=event_type, data=payload.wire(), timestamp=now_ms())

    def to_json(self) -> str:
        return self.model_dump_json()


# ── API bodies ────────────────────────────────────────────────


class UserStatusOut(WireModel):
    """One entry of GET /connections/status."""

    username: str
    is_connected: bool
    state: str
    stats: RoomStats
    comments_count: int = 0
    gifts_count: int = 0


class SpeakIn(WireModel):
    text: str = ""
    voice_id: str = ""
    provider: Optional[str] = None
    speed: float = 1.0
    volume: float = 1.0


class GiftLedgerOut(WireModel):
    """A persisted gift row."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    username: str
    event_id: str
    user: str
    gift_id: int
    gift_name: str
    repeat_count: int
    diamond_count: int
    received_at: datetime
