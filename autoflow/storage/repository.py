"""Record store for workflows and execution logs."""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import Workflow, WorkflowExecutionLog
from ..models.records import ExecutionLogRecord, WorkflowRecord
from .database import get_session_factory
from .models import ExecutionLogRecordModel, WorkflowRecordModel

logger = get_logger(__name__)


class _Repository:
    table: str = ""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        """Open a session, committing on success and wrapping database errors."""
        db = (self._session_factory or get_session_factory())()
        try:
            yield db
            db.commit()
        except StorageError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error during {operation} on {self.table}: {str(e)}")
            raise StorageError(f"Failed to {operation} {self.table} record: {str(e)}",
                               operation=operation, table=self.table)
        finally:
            db.close()

    def _not_found(self, record_id: str, operation: str) -> StorageError:
        return StorageError(
            f"{self.table.rstrip('s').replace('_', ' ').capitalize()} '{record_id}' not found",
            operation=operation, table=self.table, not_found=True
        )


class WorkflowRepository(_Repository):
    """Persists workflow snapshots as wire-format JSON."""
    table = "workflows"

    def get_by_id(self, workflow_id: str) -> WorkflowRecord:
        """
        Fetch a stored workflow record.

        Raises:
            StorageError: If the workflow does not exist or the query fails
        """
        with self._session("get") as db:
            model = db.get(WorkflowRecordModel, workflow_id)
            if model is None:
                raise self._not_found(workflow_id, "get")
            return WorkflowRecord.model_validate(model)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return Workflow.model_validate(self.get_by_id(workflow_id).workflow_json)

    def create(self, workflow: Workflow, user_id: Optional[str] = None) -> WorkflowRecord:
        logger.info(f"Storing workflow {workflow.id} ('{workflow.name}')")
        with self._session("create") as db:
            if db.get(WorkflowRecordModel, workflow.id) is not None:
                raise StorageError(f"Workflow '{workflow.id}' already exists", operation="create", table=self.table)
            now = datetime.utcnow()
            model = WorkflowRecordModel(
                id=workflow.id,
                name=workflow.name,
                description=workflow.description,
                version=workflow.version,
                workflow_json=workflow.to_wire(),
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            db.add(model)
            db.flush()
            return WorkflowRecord.model_validate(model)

    def update(self, workflow: Workflow) -> WorkflowRecord:
        """Replace the stored snapshot of an existing workflow."""
        with self._session("update") as db:
            model = db.get(WorkflowRecordModel, workflow.id)
            if model is None:
                raise self._not_found(workflow.id, "update")
            model.name = workflow.name
            model.description = workflow.description
            model.version = workflow.version
            model.workflow_json = workflow.to_wire()
            model.updated_at = datetime.utcnow()
            db.flush()
            logger.info(f"Updated workflow {workflow.id}")
            return WorkflowRecord.model_validate(model)

    def get_all(self, user_id: Optional[str] = None) -> List[WorkflowRecord]:
        """All workflows, most recently updated first, optionally for one user."""
        with self._session("list") as db:
            query = db.query(WorkflowRecordModel)
            if user_id is not None:
                query = query.filter(WorkflowRecordModel.user_id == user_id)
            models = query.order_by(WorkflowRecordModel.updated_at.desc()).all()
            return [WorkflowRecord.model_validate(model) for model in models]


class ExecutionLogRepository(_Repository):
    """Persists execution logs; the full log is kept as wire-format JSON."""
    table = "execution_logs"

    def create(self, log: WorkflowExecutionLog) -> ExecutionLogRecord:
        with self._session("create") as db:
            model = ExecutionLogRecordModel(
                id=log.execution_id,
                workflow_id=log.workflow_id,
                start_time=log.start_time,
                end_time=log.end_time,
                status=log.status.value,
                error=log.error,
                logs_json=log.to_wire(),
                created_at=datetime.utcnow(),
            )
            db.add(model)
            db.flush()
            return ExecutionLogRecord.model_validate(model)

    def update(self, log: WorkflowExecutionLog) -> ExecutionLogRecord:
        with self._session("update") as db:
            model = db.get(ExecutionLogRecordModel, log.execution_id)
            if model is None:
                raise self._not_found(log.execution_id, "update")
            model.end_time = log.end_time
            model.status = log.status.value
            model.error = log.error
            model.logs_json = log.to_wire()
            db.flush()
            return ExecutionLogRecord.model_validate(model)

    def get_by_id(self, execution_id: str) -> ExecutionLogRecord:
        with self._session("get") as db:
            model = db.get(ExecutionLogRecordModel, execution_id)
            if model is None:
                raise self._not_found(execution_id, "get")
            return ExecutionLogRecord.model_validate(model)

    def get_by_workflow_id(self, workflow_id: str) -> List[ExecutionLogRecord]:
        """Execution logs of a workflow, newest first."""
        with self._session("list") as db:
            models = (
                db.query(ExecutionLogRecordModel)
                .filter(ExecutionLogRecordModel.workflow_id == workflow_id)
                .order_by(ExecutionLogRecordModel.start_time.desc())
                .all()
            )
            return [ExecutionLogRecord.model_validate(model) for model in models]
