"""Append-only record of gifts per broadcaster, backed by the optional ledger database."""
import datetime
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.core.errors import LedgerDisabled
from relay.db.models import GiftRecord
from relay.db.schemas import Gift

logger = logging.getLogger("relay.ledger")


class GiftLedger:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def enabled(self) -> bool:
        return self._session_factory is not None

    async def record(self, username: str, gift: Gift) -> None:
        if self._session_factory is None:
            return
        row = GiftRecord(
            username=username,
            event_id=gift.id,
            user=gift.user,
            gift_id=gift.gift_id,
            gift_name=gift.gift_name,
            repeat_count=gift.repeat_count,
            diamond_count=gift.diamond_count,
            received_at=datetime.datetime.fromtimestamp(gift.timestamp / 1000, tz=datetime.timezone.utc),
        )
        async with self._session_factory() as s:
            s.add(row)
            await s.commit()
        logger.debug("[%s] ledger: %s x%d from @%s", username, gift.gift_name, gift.repeat_count, gift.user)

    async def history(self, username: str, limit: int = 100) -> list[GiftRecord]:
        """Most recent first."""
        if self._session_factory is None:
            raise LedgerDisabled("GIFT_LEDGER_URL is not configured")
        async with self._session_factory() as s:
            result = await s.execute(
                select(GiftRecord)
                .where(GiftRecord.username == username)
                .order_by(GiftRecord.received_at.desc(), GiftRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
