"""Database models and storage layer."""

from .database import Base, get_database_engine, get_session_factory, create_tables, drop_tables
from .models import WorkflowRecordModel, ExecutionLogRecordModel
from .repository import WorkflowRepository, ExecutionLogRepository

__all__ = [
    "Base",
    "get_database_engine",
    "get_session_factory",
    "create_tables",
    "drop_tables",
    "WorkflowRecordModel",
    "ExecutionLogRecordModel",
    "WorkflowRepository",
    "ExecutionLogRepository",
]
