"""
Storage layer
"""
from .repository import (
    SuspensionStore, RunRepository,
    InMemorySuspensionStore, InMemoryRunRepository
)
from .sqlalchemy_repository import (
    DatabaseManager, SQLAlchemySuspensionStore, SQLAlchemyRunRepository
)

__all__ = [
    "SuspensionStore",
    "RunRepository",
    "InMemorySuspensionStore",
    "InMemoryRunRepository",
    "DatabaseManager",
    "SQLAlchemySuspensionStore",
    "SQLAlchemyRunRepository",
]
