from relay.db.database import create_tables, dispose_engine, init_engine
from relay.db.models import Base, GiftRecord

__all__ = [
    "create_tables",
    "dispose_engine",
    "init_engine",
    "Base",
    "GiftRecord",
]
