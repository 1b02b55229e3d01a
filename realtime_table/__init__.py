"""
realtime_table package - live-updating views of remote tables

Expose the client, the collection handle and the error taxonomy.
"""
from .client import RealtimeTableClient
from .collection import TableCollection
from .errors import (
    RealtimeTableError,
    NetworkError,
    NotFoundError,
    ValidationError,
    AuthError,
    SubscriptionLostError,
)
from .types.query_descriptor import QueryDescriptor, OrderBy, Filter
from .types.mutation_result import MutationResult

__all__ = [
    "RealtimeTableClient",
    "TableCollection",
    "QueryDescriptor",
    "OrderBy",
    "Filter",
    "MutationResult",
    "RealtimeTableError",
    "NetworkError",
    "NotFoundError",
    "ValidationError",
    "AuthError",
    "SubscriptionLostError",
]
