import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class GiftRecord(Base):
    """One gift event received during a monitored broadcast (append-only)."""
    __tablename__ = "gifts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)
    user = Column(Text, nullable=False)
    gift_id = Column(Integer, nullable=False, default=0)
    gift_name = Column(Text, nullable=False)
    repeat_count = Column(Integer, nullable=False, default=1)
    diamond_count = Column(Integer, nullable=False, default=0)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    __table_args__ = (Index("idx_gifts_username_time", "username", "received_at"),)
