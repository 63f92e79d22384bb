"""
Known TikTok gifts: id -> canonical name, diamond value, emoji.

Used by gift normalization when the upstream payload omits or garbles the
gift name; ids that are not listed fall back to the raw payload values.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

GENERIC_GIFT_LABEL = "Regalo"
GENERIC_GIFT_EMOJI = "🎁"


@dataclass(frozen=True)
class GiftInfo:
    gift_id: int
    name: str
    name_en: str
    diamonds: int
    emoji: str
    category: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "giftId": self.gift_id,
            "name": self.name,
            "nameEn": self.name_en,
            "diamonds": self.diamonds,
            "emoji": self.emoji,
            "category": self.category,
        }


def _g(gift_id: int, name: str, name_en: str, diamonds: int, emoji: str, category: str) -> GiftInfo:
    return GiftInfo(gift_id, name, name_en, diamonds, emoji, category)


# ─────────────────────────────────────────────────────────────
# Catalog
# ─────────────────────────────────────────────────────────────
GIFTS: dict[int, GiftInfo] = {
    g.gift_id: g
    for g in (
        _g(1, "Rosa", "Rose", 1, "🌹", "básico"),
        _g(2, "Panda", "Panda", 5, "🐼", "básico"),
        _g(3, "Perfume", "Perfume", 20, "💄", "básico"),
        _g(4, "Te Amo", "I Love You", 49, "💕", "básico"),
        _g(5, "Confeti", "Confetti", 100, "🎊", "básico"),
        _g(6, "Gafas de Sol", "Sunglasses", 199, "🕶️", "intermedio"),
        _g(7, "Lluvia de Dinero", "Money Rain", 500, "💸", "intermedio"),
        _g(8, "Bola de Disco", "Disco Ball", 1000, "🪩", "intermedio"),
        _g(9, "Sirena", "Mermaid", 2988, "🧜‍♀️", "premium"),
        _g(10, "Avión", "Airplane", 6000, "✈️", "premium"),
        _g(11, "Planeta", "Planet", 15000, "🪐", "premium"),
        _g(12, "Vuelo Diamante", "Diamond Flight", 18000, "💎✈️", "premium"),
        _g(13, "León", "Lion", 29999, "🦁", "premium"),
        _g(14, "TikTok Universe", "TikTok Universe", 44999, "🌌", "premium"),
        _g(15, "Corazón", "Heart", 1, "❤️", "básico"),
        _g(16, "Corona", "Crown", 9999, "👑", "premium"),
        _g(17, "Fuego", "Fire", 99, "🔥", "básico"),
        _g(18, "Estrella", "Star", 50, "⭐", "básico"),
        _g(19, "Cake", "Cake", 299, "🎂", "intermedio"),
        _g(20, "Diamante", "Diamond", 5000, "💎", "premium"),
        _g(21, "Beso", "Kiss", 10, "💋", "básico"),
        _g(22, "Cerveza", "Beer", 30, "🍺", "básico"),
        _g(23, "Pizza", "Pizza", 50, "🍕", "básico"),
        _g(24, "Cofre", "Treasure", 200, "💎", "intermedio"),
        _g(25, "Rayo", "Lightning", 150, "⚡", "intermedio"),
        _g(26, "Tornado", "Tornado", 800, "🌪️", "intermedio"),
        _g(27, "Dragón", "Dragon", 12000, "🐉", "premium"),
        _g(28, "Fénix", "Phoenix", 20000, "🔥", "premium"),
        _g(29, "Galaxia", "Galaxy", 25000, "🌠", "premium"),
        _g(30, "Universo", "Universe", 50000, "🌌", "premium"),
    )
}


def gift_by_id(gift_id: Any) -> Optional[GiftInfo]:
    try:
        return GIFTS.get(int(gift_id))
    except (TypeError, ValueError):
        return None


def gift_by_name(name: Optional[str]) -> Optional[GiftInfo]:
    """Case-insensitive match on Spanish or English name, exact first, then substring."""
    needle = (name or "").strip().lower()
    if not needle:
        return None
    for gift in GIFTS.values():
        if needle in (gift.name.lower(), gift.name_en.lower()):
            return gift
    for gift in GIFTS.values():
        if needle in gift.name.lower() or needle in gift.name_en.lower():
            return gift
    return None


def sorted_by_value(category: Optional[str] = None) -> list[GiftInfo]:
    gifts = [g for g in GIFTS.values() if category is None or g.category == category]
    return sorted(gifts, key=lambda g: (g.diamonds, g.gift_id))
