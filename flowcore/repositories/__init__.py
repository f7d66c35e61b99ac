"""Repository modules - Data access layer"""
from .base import WorkflowStore
from .memory_store import InMemoryWorkflowStore
from .mongo_store import MongoWorkflowStore
from .mongo_client import create_client, get_database, create_indexes

__all__ = [
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "MongoWorkflowStore",
    "create_client",
    "get_database",
    "create_indexes",
]
