from .store import EntityStore, StoreError
from .aggregation import ComplianceAggregator
from .messaging import ChannelMessenger, Messenger
from .postgres_store import PostgresEntityStore

__all__ = [
    "EntityStore",
    "StoreError",
    "ComplianceAggregator",
    "ChannelMessenger",
    "Messenger",
    "PostgresEntityStore",
]
