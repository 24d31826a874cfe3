from .config import get_settings
from .services.aggregation import ComplianceAggregator
from .services.postgres_store import PostgresEntityStore
from .services.store import EntityStore


def get_store() -> EntityStore:
    """Dependency returning the database-backed entity store."""
    return PostgresEntityStore()


def get_aggregator() -> ComplianceAggregator:
    """Dependency returning an aggregator bound to the configured compliance timezone."""
    return ComplianceAggregator(get_store(), get_settings().compliance_timezone)
