"""
Raw upstream payload -> normalized event.

TikTokLive has renamed fields between releases (camelCase dicts in the old
JSON bridge, snake_case protobuf attributes in current releases), so every
field is read through a fallback chain of dotted paths. Each path segment is
looked up as a mapping key, then as an attribute, then as a list index.
All functions here are pure.
"""
from __future__ import annotations

from typing import Any, Optional

from relay.db.schemas import Comment, Follow, Gift, Like, RoomStats, Share, now_ms
from upstream.gifts import (
    GENERIC_GIFT_EMOJI,
    GENERIC_GIFT_LABEL,
    gift_by_id,
    gift_by_name,
)

UNKNOWN_USER = "Usuario"
MENTION_MARKER = "@"

_USER_PATHS = (
    "user.unique_id",
    "user.uniqueId",
    "uniqueId",
    "unique_id",
    "user.nickname",
    "user.nick_name",
    "nickname",
)
_PROFILE_PIC_PATHS = (
    "user.avatar_thumb.m_urls.0",
    "user.profilePicture.urls.0",
    "user.profile_picture.urls.0",
    "profilePictureUrl",
    "profile_picture_url",
)
_GIFT_ID_PATHS = ("giftId", "gift_id", "gift.id", "gift.gift_id", "gift.giftId")
_GIFT_NAME_PATHS = ("giftName", "gift_name", "gift.name", "gift.gift_name")
_DIAMOND_PATHS = ("diamondCount", "diamond_count", "gift.diamond_count", "gift.diamondCount")


def normalize_username(raw: Optional[str]) -> str:
    """Strip surrounding whitespace and a single leading mention marker. Case is kept."""
    name = (raw or "").strip()
    if name.startswith(MENTION_MARKER):
        name = name[len(MENTION_MARKER):]
    return name.strip()


def _step(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    if isinstance(obj, (list, tuple)):
        try:
            return obj[int(key)]
        except (ValueError, IndexError):
            return None
    try:
        return getattr(obj, key, None)
    except Exception:
        return None


def pick(payload: Any, *paths: str, default: Any = None) -> Any:
    """First truthy value found along ``paths``; ``default`` if none."""
    for path in paths:
        value = payload
        for key in path.split("."):
            value = _step(value, key)
            if value is None:
                break
        try:
            if value:
                return value
        except Exception:
            continue
    return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def user_of(payload: Any) -> str:
    return str(pick(payload, *_USER_PATHS, default=UNKNOWN_USER))


def profile_pic_of(payload: Any) -> Optional[str]:
    url = pick(payload, *_PROFILE_PIC_PATHS)
    return str(url) if url else None


def normalize_comment(payload: Any, timestamp: Optional[int] = None) -> Optional[Comment]:
    """None when the message has no readable text."""
    text = pick(payload, "comment", "content", "text", default="")
    text = str(text)
    if not text.strip():
        return None
    return Comment(
        user=user_of(payload),
        text=text,
        timestamp=timestamp or now_ms(),
        profile_pic_url=profile_pic_of(payload),
    )


def resolve_gift(payload: Any) -> tuple[str, int, str]:
    """(name, diamonds, emoji): catalog by id, then catalog by name, then raw values."""
    info = gift_by_id(pick(payload, *_GIFT_ID_PATHS, default=0))
    if info is not None:
        return info.name, info.diamonds, info.emoji
    raw_name = pick(payload, *_GIFT_NAME_PATHS)
    info = gift_by_name(str(raw_name) if raw_name else None)
    if info is not None:
        return info.name, info.diamonds, info.emoji
    diamonds = _int(pick(payload, *_DIAMOND_PATHS, default=0))
    return str(raw_name or GENERIC_GIFT_LABEL), diamonds, GENERIC_GIFT_EMOJI


def is_streak_in_progress(payload: Any) -> bool:
    """A streakable gift whose combo has not finished yet."""
    streakable = bool(pick(payload, "streakable", "gift.combo")) or _int(
        pick(payload, "giftType", "gift_type", "gift.type")
    ) == 1
    return streakable and not pick(payload, "repeatEnd", "repeat_end")


def normalize_gift(payload: Any, timestamp: Optional[int] = None) -> Gift:
    ts = timestamp or now_ms()
    gift_id = _int(pick(payload, *_GIFT_ID_PATHS, default=0))
    name, diamonds, emoji = resolve_gift(payload)
    user = user_of(payload)
    return Gift(
        id=f"{user}-{gift_id}-{ts}",
        user=user,
        gift_name=name,
        gift_id=gift_id,
        repeat_count=_int(pick(payload, "repeatCount", "repeat_count", default=1), 1),
        diamond_count=diamonds,
        timestamp=ts,
        emoji=emoji,
        profile_pic_url=profile_pic_of(payload),
    )


def normalize_like(payload: Any, timestamp: Optional[int] = None) -> Like:
    return Like(
        user=user_of(payload),
        like_count=_int(pick(payload, "likeCount", "like_count", "count", default=1), 1),
        total_like_count=_int(pick(payload, "totalLikeCount", "total_like_count", "total", default=0)),
        timestamp=timestamp or now_ms(),
    )


def normalize_follow(payload: Any, timestamp: Optional[int] = None) -> Follow:
    return Follow(
        user=user_of(payload),
        timestamp=timestamp or now_ms(),
        profile_pic_url=profile_pic_of(payload),
    )


def normalize_share(payload: Any, timestamp: Optional[int] = None) -> Share:
    return Share(user=user_of(payload), timestamp=timestamp or now_ms())


def normalize_room_user(payload: Any, current: RoomStats) -> RoomStats:
    """Overwrite viewer figures from a room snapshot; like count is carried over."""
    total = pick(payload, "totalViewerCount", "total_viewer_count", "total_user", "totalUser")
    if not total:
        top = pick(payload, "topViewers", "top_viewers", "ranks_list", default=[])
        try:
            total = len(top)
        except TypeError:
            total = 0
    return RoomStats(
        viewer_count=_int(pick(payload, "viewerCount", "viewer_count", "m_total", default=0)),
        like_count=current.like_count,
        total_viewer_count=_int(total),
    )


def apply_like_total(payload: Any, current: RoomStats) -> RoomStats:
    total = _int(pick(payload, "totalLikeCount", "total_like_count", "total", default=0))
    if not total:
        return current
    return current.model_copy(update={"like_count": total})


def connected_viewer_count(payload: Any) -> int:
    return _int(pick(payload, "viewerCount", "viewer_count", "room_info.user_count", default=0))
