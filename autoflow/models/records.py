"""Persistence record shapes exchanged with the record store."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowRecord(BaseModel):
    """A stored workflow snapshot."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    version: str
    workflow_json: Dict[str, Any] = Field(..., description="Wire-format workflow")
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ExecutionLogRecord(BaseModel):
    """A stored execution log."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str
    error: Optional[str] = None
    logs_json: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
