"""
Data store handles: the abstract capability surface and its MongoDB implementation.
"""

from .base import ChangeFeed, DataStore
from .mongo import MongoChangeFeed, MongoDataStore, translate_error

__all__ = [
    "ChangeFeed",
    "DataStore",
    "MongoChangeFeed",
    "MongoDataStore",
    "translate_error",
]
