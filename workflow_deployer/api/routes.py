"""
FastAPI routes for the workflow deployer API.

Implements:
- GET /health - Service and engine health
- POST /deployments/dry-run - Preview a deployment
- POST /deployments - Run a two-phase deployment
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_deployer import __version__
from workflow_deployer.core.errors import DefinitionSourceError, EngineError
from workflow_deployer.executor.executor import DeploymentReport
from workflow_deployer.planner.diff import DryRunReport
from workflow_deployer.service import DeploymentService

router = APIRouter(prefix="/v1", tags=["deployments"])


# ==================== Request/Response Models ====================

class DeploymentRequest(BaseModel):
    """Request body for dry runs and deployments."""

    force: bool = Field(default=False, description="Update workflows even when unchanged")
    workflows: Optional[list[dict[str, Any]]] = Field(
        default=None,
        description="Inline workflow definitions; the configured directory is used when omitted",
    )
    activate: Optional[bool] = Field(default=None, description="Override the activation setting")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "force": False,
                "workflows": [
                    {
                        "name": "Send Report",
                        "nodes": [
                            {
                                "name": "Call Formatter",
                                "type": "n8n-nodes-base.executeWorkflow",
                                "parameters": {"source": "database", "workflowId": "Format Report"},
                            }
                        ],
                        "connections": {},
                    },
                    {"name": "Format Report", "nodes": [], "connections": {}},
                ],
            }
        }
    )


class DeploymentResponse(BaseModel):
    """Response for a deployment request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    valid: bool
    dry_run: DryRunReport
    result: Optional[DeploymentReport] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_service(request: Request) -> DeploymentService:
    """Build a deployment service over the app's engine client."""
    return DeploymentService(request.app.state.engine_client, request.app.state.settings)


def _engine_unavailable(e: EngineError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Workflow engine error: {e}",
    )


# ==================== Routes ====================

@router.post(
    "/deployments/dry-run",
    response_model=DryRunReport,
    summary="Preview a deployment",
    description="Diff local definitions against the engine and validate them. Never mutates the engine.",
)
async def dry_run(
    request: Optional[DeploymentRequest] = None,
    service: DeploymentService = Depends(get_service),
) -> DryRunReport:
    """Return the dry-run report."""
    request = request or DeploymentRequest()
    try:
        return await service.dry_run(force=request.force, definitions=request.workflows)
    except DefinitionSourceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except EngineError as e:
        raise _engine_unavailable(e)


@router.post(
    "/deployments",
    response_model=DeploymentResponse,
    summary="Deploy workflows",
    description=(
        "Materialize changed workflows inactive, then activate them in dependency order. "
        "Returns 422 with the dry-run report when validation fails."
    ),
)
async def deploy(
    request: Optional[DeploymentRequest] = None,
    service: DeploymentService = Depends(get_service),
):
    """Run a deployment."""
    request = request or DeploymentRequest()
    try:
        outcome = await service.deploy(
            force=request.force,
            definitions=request.workflows,
            activate=request.activate,
        )
    except DefinitionSourceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except EngineError as e:
        raise _engine_unavailable(e)

    response = DeploymentResponse(
        valid=outcome.plan.is_valid,
        dry_run=outcome.plan.report,
        result=outcome.report,
    )
    if not outcome.plan.is_valid:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode="json", by_alias=True),
        )
    return response


# ==================== Health Check Routes ====================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the deployer and the reachability of the workflow engine.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check health of the engine connection."""
    services = {}

    client = request.app.state.engine_client
    try:
        reachable = await client.ping()
    except EngineError:
        reachable = False
    services["engine"] = "healthy" if reachable else "unhealthy"

    overall_status = "healthy" if reachable else "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
