"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowRecordModel(Base):
    """Database model for stored workflows."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    version = Column(String, nullable=False)
    workflow_json = Column(JSON, nullable=False)  # Wire-format workflow snapshot
    user_id = Column(String, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("ExecutionLogRecordModel", back_populates="workflow")


class ExecutionLogRecordModel(Base):
    """Database model for workflow execution logs."""
    __tablename__ = "execution_logs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    status = Column(String, nullable=False)  # running, success, failed, cancelled
    error = Column(Text)
    logs_json = Column(JSON)  # Wire-format WorkflowExecutionLog
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("WorkflowRecordModel", back_populates="executions")
