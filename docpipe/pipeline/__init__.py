# Orchestrator lives in docpipe.pipeline.orchestrator; not re-exported here
# because the record stores import docpipe.pipeline.types.
from docpipe.pipeline.types import (
    DocumentRef,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStatusView,
    make_execution_id,
)

__all__ = [
    "DocumentRef",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionStatusView",
    "make_execution_id",
]
