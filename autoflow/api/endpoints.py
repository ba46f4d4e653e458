"""FastAPI REST endpoints for the workflow engine."""

import asyncio
import uuid
from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError as ModelValidationError

from ..core.assistant import WorkflowAssistant
from ..core.capability_registry import CapabilityRegistry, CompileTarget
from ..core.compiler import WorkflowCompiler
from ..core.editor import apply_edit
from ..core.exceptions import (
    AISuggestionError,
    CompilationError,
    DependencyError,
    GraphValidationError,
    StorageError,
    VariableScopeError,
    WorkflowEngineError,
    create_error_response
)
from ..core.scheduler import ExecutionScheduler
from ..core.validator import GraphValidator
from ..models.core import EditAction, EditOperation, RunStatus, WireModel, Workflow, WorkflowExecutionLog
from ..storage.repository import ExecutionLogRepository, WorkflowRepository
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (will be initialized in main.py)
_registry: Optional[CapabilityRegistry] = None
_scheduler: Optional[ExecutionScheduler] = None
_compiler: Optional[WorkflowCompiler] = None
_validator: Optional[GraphValidator] = None
_workflow_repository: Optional[WorkflowRepository] = None
_execution_repository: Optional[ExecutionLogRepository] = None
_assistant: Optional[WorkflowAssistant] = None
_background_runs: Dict[str, asyncio.Task] = {}


def init_dependencies(
    registry: CapabilityRegistry,
    scheduler: ExecutionScheduler,
    compiler: WorkflowCompiler,
    workflow_repository: WorkflowRepository,
    execution_repository: ExecutionLogRepository,
    assistant: Optional[WorkflowAssistant] = None,
    validator: Optional[GraphValidator] = None
):
    """Initialize the global dependencies."""
    global _registry, _scheduler, _compiler, _validator
    global _workflow_repository, _execution_repository, _assistant
    _registry = registry
    _scheduler = scheduler
    _compiler = compiler
    _validator = validator or GraphValidator()
    _workflow_repository = workflow_repository
    _execution_repository = execution_repository
    _assistant = assistant


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_registry() -> CapabilityRegistry:
    return _require(_registry, "Capability registry")


def get_scheduler() -> ExecutionScheduler:
    return _require(_scheduler, "Execution scheduler")


def get_compiler() -> WorkflowCompiler:
    return _require(_compiler, "Compiler")


def get_validator() -> GraphValidator:
    return _require(_validator, "Validator")


def get_workflow_repository() -> WorkflowRepository:
    return _require(_workflow_repository, "Workflow repository")


def get_execution_repository() -> ExecutionLogRepository:
    return _require(_execution_repository, "Execution log repository")


def get_assistant() -> WorkflowAssistant:
    """Dependency to get the suggestion assistant; 503 when none is configured."""
    if _assistant is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "SuggestionServiceUnavailable",
                "message": "No workflow suggestion service is configured",
                "details": {}
            }
        )
    return _assistant


def _engine_error_status(error: WorkflowEngineError) -> int:
    if isinstance(error, StorageError):
        return status.HTTP_404_NOT_FOUND if error.not_found else status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(error, (GraphValidationError, VariableScopeError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (DependencyError, CompilationError)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, AISuggestionError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(error: Exception, action: str) -> HTTPException:
    """Translate an exception raised while handling a request."""
    if isinstance(error, WorkflowEngineError):
        logger.warning(f"Workflow engine error while {action}: {str(error)}")
        return HTTPException(status_code=_engine_error_status(error), detail=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class GenerateWorkflowRequest(WireModel):
    """Request model for generating a workflow from a prompt."""
    prompt: str = Field(..., min_length=1, description="Natural-language description of the workflow")
    context: Optional[Dict[str, Any]] = Field(None, description="Extra context for the suggestion service")
    user_id: Optional[str] = Field(None, description="Owner of the stored workflow")


class GenerateWorkflowResponse(WireModel):
    workflow: Dict[str, Any]
    reasoning: str = ""
    warnings: List[str] = Field(default_factory=list)


class CreateWorkflowRequest(WireModel):
    """Request model for storing a workflow as-is."""
    workflow: Dict[str, Any] = Field(..., description="Wire-format workflow")
    user_id: Optional[str] = None


class WorkflowSummary(WireModel):
    id: str
    name: str
    description: Optional[str] = None
    version: str
    user_id: Optional[str] = None
    updated_at: datetime


class EditWorkflowRequest(WireModel):
    """Request model for editing a stored workflow.

    With ``instruction`` set, ``editNode`` and ``addNode`` are delegated to
    the suggestion service; otherwise ``data`` is applied directly.
    """
    action: EditAction
    data: Dict[str, Any] = Field(default_factory=dict)
    instruction: Optional[str] = None


class RunWorkflowRequest(WireModel):
    """Request model for running a stored workflow."""
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Run inputs")
    secrets: Dict[str, Any] = Field(default_factory=dict, description="Credential values by credential id or name")
    wait: bool = Field(True, description="Wait for the run to finish before responding")


class CompileWorkflowRequest(WireModel):
    format: str = Field("external", description="Compile target: external (n8n) or runtime")


def _validated(workflow_data: Dict[str, Any], validator: GraphValidator) -> Workflow:
    result = validator.validate(workflow_data)
    if not result.valid:
        raise GraphValidationError(
            f"Workflow validation failed: {'; '.join(result.messages())}",
            validation_errors=[issue.model_dump() for issue in result.errors],
            workflow_id=workflow_data.get("id")
        )
    try:
        return Workflow.model_validate(workflow_data)
    except ModelValidationError as e:
        raise GraphValidationError(
            f"Workflow validation failed: {e.errors()[0]['msg']}",
            workflow_id=workflow_data.get("id")
        )


# Endpoints

@router.post(
    "/workflows/generate",
    response_model=GenerateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate a workflow from a prompt"
)
async def generate_workflow(
    request: GenerateWorkflowRequest,
    assistant: WorkflowAssistant = Depends(get_assistant),
    repository: WorkflowRepository = Depends(get_workflow_repository),
    validator: GraphValidator = Depends(get_validator)
) -> GenerateWorkflowResponse:
    """
    Generate a workflow with the suggestion service and store it.

    Raises:
        HTTPException: 503 without a suggestion service, 400 for an invalid
            suggestion, 502 when the service fails
    """
    try:
        workflow, reasoning = await assistant.generate_workflow(request.prompt, request.context)
        repository.create(workflow, user_id=request.user_id)
        warnings = validator.validate(workflow).warnings
        return GenerateWorkflowResponse(
            workflow=workflow.to_wire(),
            reasoning=reasoning,
            warnings=[f"{issue.path}: {issue.message}" for issue in warnings]
        )
    except Exception as e:
        raise _http_error(e, "generating the workflow")


@router.post(
    "/workflows",
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    validator: GraphValidator = Depends(get_validator)
) -> Dict[str, Any]:
    try:
        workflow = _validated(request.workflow, validator)
        repository.create(workflow, user_id=request.user_id)
        logger.info(f"Stored workflow {workflow.id}")
        return workflow.to_wire()
    except Exception as e:
        raise _http_error(e, "storing the workflow")


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List stored workflows"
)
async def list_workflows(
    user_id: Optional[str] = None,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> List[WorkflowSummary]:
    try:
        return [
            WorkflowSummary(
                id=record.id,
                name=record.name,
                description=record.description,
                version=record.version,
                user_id=record.user_id,
                updated_at=record.updated_at
            )
            for record in repository.get_all(user_id=user_id)
        ]
    except Exception as e:
        raise _http_error(e, "listing workflows")


@router.get("/workflows/{workflow_id}", summary="Fetch a stored workflow")
async def get_workflow(
    workflow_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> Dict[str, Any]:
    try:
        return repository.get_by_id(workflow_id).workflow_json
    except Exception as e:
        raise _http_error(e, "retrieving the workflow")


@router.post("/workflows/validate", summary="Validate a workflow without storing it")
async def validate_workflow(
    workflow: Dict[str, Any],
    validator: GraphValidator = Depends(get_validator)
) -> Dict[str, Any]:
    return validator.validate(workflow).to_wire()


@router.post("/workflows/{workflow_id}/edit", summary="Apply an edit to a stored workflow")
async def edit_workflow(
    workflow_id: str,
    request: EditWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    validator: GraphValidator = Depends(get_validator)
) -> Dict[str, Any]:
    """
    Apply one edit operation and store the result.

    The edited workflow must still validate; the stored copy is left
    untouched otherwise.
    """
    try:
        workflow = repository.get_workflow(workflow_id)

        if request.instruction and request.action in (EditAction.EDIT_NODE, EditAction.ADD_NODE):
            assistant = get_assistant()
            if request.action == EditAction.EDIT_NODE:
                updated = await assistant.edit_node(workflow, request.data.get("nodeId"), request.instruction)
            else:
                updated = await assistant.add_suggested_node(
                    workflow, request.instruction, request.data.get("afterNodeId")
                )
        else:
            updated = apply_edit(workflow, EditOperation(action=request.action, data=request.data))

        updated = _validated(updated.to_wire(), validator)
        repository.update(updated)
        logger.info(f"Applied {request.action.value} to workflow {workflow_id}")
        return updated.to_wire()
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "editing the workflow")


@router.post("/workflows/{workflow_id}/run", summary="Run a stored workflow")
async def run_workflow(
    workflow_id: str,
    request: RunWorkflowRequest,
    scheduler: ExecutionScheduler = Depends(get_scheduler),
    workflows: WorkflowRepository = Depends(get_workflow_repository),
    executions: ExecutionLogRepository = Depends(get_execution_repository)
):
    """
    Execute a stored workflow, recording its log before and after the run.

    With ``wait`` false the run continues in the background and the
    response carries only the execution id (HTTP 202).
    """
    try:
        workflow = workflows.get_workflow(workflow_id)
        execution_id = str(uuid.uuid4())
        started = datetime.utcnow()
        executions.create(WorkflowExecutionLog(
            execution_id=execution_id,
            workflow_id=workflow.id,
            start_time=started
        ))
    except Exception as e:
        raise _http_error(e, "starting the workflow run")

    async def run_and_record() -> WorkflowExecutionLog:
        log = await scheduler.execute(
            workflow, inputs=request.inputs, secrets=request.secrets, execution_id=execution_id
        )
        executions.update(log)
        return log

    async def run_in_background() -> None:
        # Nobody awaits this task, so failures must end up in the stored log
        try:
            await run_and_record()
        except Exception as e:
            logger.error(f"Background execution {execution_id} failed: {str(e)}", exc_info=True)
            failed = WorkflowExecutionLog(
                execution_id=execution_id,
                workflow_id=workflow.id,
                start_time=started,
                end_time=datetime.utcnow(),
                status=RunStatus.FAILED,
                error=f"Execution could not be recorded: {str(e)}"
            )
            try:
                executions.update(failed)
            except Exception as store_error:
                logger.error(f"Could not mark execution {execution_id} as failed: {str(store_error)}")

    if not request.wait:
        task = asyncio.create_task(run_in_background())
        _background_runs[execution_id] = task
        task.add_done_callback(lambda _: _background_runs.pop(execution_id, None))
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"executionId": execution_id, "status": "running"}
        )

    try:
        log = await run_and_record()
        return log.to_wire()
    except Exception as e:
        raise _http_error(e, "running the workflow")


@router.get("/workflows/{workflow_id}/executions", summary="List execution logs of a workflow")
async def list_executions(
    workflow_id: str,
    workflows: WorkflowRepository = Depends(get_workflow_repository),
    executions: ExecutionLogRepository = Depends(get_execution_repository)
) -> List[Dict[str, Any]]:
    try:
        workflows.get_by_id(workflow_id)
        return [record.logs_json for record in executions.get_by_workflow_id(workflow_id)]
    except Exception as e:
        raise _http_error(e, "listing executions")


@router.get("/executions/{execution_id}", summary="Fetch an execution log")
async def get_execution(
    execution_id: str,
    executions: ExecutionLogRepository = Depends(get_execution_repository)
) -> Dict[str, Any]:
    try:
        return executions.get_by_id(execution_id).logs_json
    except Exception as e:
        raise _http_error(e, "retrieving the execution")


@router.post("/executions/{execution_id}/cancel", summary="Cancel a running execution")
async def cancel_execution(
    execution_id: str,
    scheduler: ExecutionScheduler = Depends(get_scheduler),
    executions: ExecutionLogRepository = Depends(get_execution_repository)
) -> Dict[str, Any]:
    if scheduler.cancel_execution(execution_id):
        return {"executionId": execution_id, "message": "Cancellation requested"}

    try:
        record = executions.get_by_id(execution_id)
    except Exception as e:
        raise _http_error(e, "cancelling the execution")
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "error": "ExecutionNotActive",
            "message": f"Execution '{execution_id}' is not running",
            "details": {"status": record.status}
        }
    )


@router.post("/workflows/{workflow_id}/compile", summary="Compile a stored workflow")
async def compile_workflow(
    workflow_id: str,
    request: CompileWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    compiler: WorkflowCompiler = Depends(get_compiler)
) -> Dict[str, Any]:
    """
    Compile to ``external`` (n8n document, alias ``n8n``) or ``runtime`` (Python code).

    Raises:
        HTTPException: 400 for an unknown format, 422 for unresolved
            capabilities or a failed compile
    """
    target = "external" if request.format == "n8n" else request.format
    if target not in ("external", "runtime"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "UnsupportedFormat",
                "message": f"Unsupported compile format: {request.format}",
                "details": {"supported": ["external", "n8n", "runtime"]}
            }
        )

    try:
        workflow = repository.get_workflow(workflow_id)
        compiler.resolver.require(workflow, target)
        result = compiler.compile(workflow, target)
    except Exception as e:
        raise _http_error(e, "compiling the workflow")

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "CompilationFailed",
                "message": f"Workflow '{workflow_id}' could not be compiled to {target}",
                "details": {"errors": result.errors}
            }
        )
    return result.to_wire()


@router.get("/capabilities", summary="List registered capabilities")
async def list_capabilities(
    registry: CapabilityRegistry = Depends(get_registry)
) -> List[Dict[str, Any]]:
    return [
        {
            "name": capability.name,
            "nodeType": capability.node_type.value if capability.node_type else None,
            "description": capability.description,
            "targets": [target.value for target in CompileTarget if capability.supports(target)]
        }
        for capability in registry.list_capabilities()
    ]
