"""State persistence layer for the master database."""

from store_engine.state.database import get_engine, get_session, get_session_factory
from store_engine.state.repository import (
    BillingJobRepository,
    CredentialRepository,
    CreditRepository,
    StoreRepository,
)

__all__ = [
    "BillingJobRepository",
    "CredentialRepository",
    "CreditRepository",
    "StoreRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
