from docpipe.store.base import ExecutionRecordStore
from docpipe.store.memory import InMemoryExecutionRecordStore

__all__ = [
    "ExecutionRecordStore",
    "InMemoryExecutionRecordStore",
    # SQLExecutionRecordStore: import from docpipe.store.sql (requires a database driver)
]
