from .base import BaseBroker, AsyncDequeueContextManager
from .core_sql import SQLBroker
from .core_memory import MemoryBroker


__all__ = ["BaseBroker", "AsyncDequeueContextManager", "SQLBroker", "MemoryBroker"]
