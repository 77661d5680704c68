"""
View endpoints.

Handlers stay thin: parse the request model, call the ViewService held on
app.state, return the response model. ViewError subclasses are turned into
JSON error bodies by the handler registered in pgviews.api.main.

Endpoints:
    POST  /api/views/compile
    POST  /api/views/analyze
    GET   /api/views/impact?object=
    POST  /api/connections/{connection_id}/views
    GET   /api/connections/{connection_id}/views
    POST  /api/connections/{connection_id}/views/preview
    GET   /api/views/{view_id}
    PATCH /api/views/{view_id}
    GET   /api/views/{view_id}/versions
    GET   /api/views/{view_id}/versions/{version}
    GET   /api/views/{view_id}/dependencies
    POST  /api/views/{view_id}/analyze-performance
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from pgviews.views.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    CompileRequest,
    CompileResponse,
    CreateViewRequest,
    DatabaseView,
    ImpactResponse,
    UpdateViewRequest,
    ViewDependency,
    ViewPreviewRequest,
    ViewPreviewResult,
    ViewVersion,
)
from pgviews.views.service import ViewService

router = APIRouter(prefix="/api", tags=["Views"])


def get_service(request: Request) -> ViewService:
    return request.app.state.view_service


def get_actor(x_user_id: Optional[str] = Header(None)) -> str:
    return x_user_id or "anonymous"


# =============================================================================
# Stateless
# =============================================================================

@router.post("/views/compile", response_model=CompileResponse)
def compile_view(body: CompileRequest, service: ViewService = Depends(get_service)):
    """Compile a query builder config to parameterized SQL."""
    compiled = service.compile(body.query_builder_config, body.dialect)
    return CompileResponse(**compiled.to_dict())


@router.post("/views/analyze", response_model=AnalyzeResponse)
def analyze_view(
    body: AnalyzeRequest,
    connection_id: Optional[str] = Query(None, alias="connectionId"),
    service: ViewService = Depends(get_service),
):
    """
    Extract table, view and function dependencies from a definition.

    With connectionId, views managed on that connection are classified as
    views. Without it the service-wide catalog is used, if one is configured.
    """
    analysis = service.analyze(body.sql_definition, body.query_builder_config, connection_id)
    return AnalyzeResponse(
        dependencies=analysis.sorted_dependencies(),
        unresolved=sorted(analysis.unresolved),
    )


@router.get("/views/impact", response_model=ImpactResponse)
def view_impact(
    object_name: str = Query(..., alias="object"),
    service: ViewService = Depends(get_service),
):
    """Managed views that depend on a table, view or function."""
    return ImpactResponse(object_name=object_name, dependent_views=service.dependents_of(object_name))


# =============================================================================
# Per connection
# =============================================================================

@router.post("/connections/{connection_id}/views", response_model=DatabaseView, status_code=201)
def create_view(
    connection_id: str,
    body: CreateViewRequest,
    actor: str = Depends(get_actor),
    service: ViewService = Depends(get_service),
):
    """Create a view and record version 1.0."""
    return service.create_view(connection_id, body, actor)


@router.get("/connections/{connection_id}/views", response_model=List[DatabaseView])
def list_views(connection_id: str, service: ViewService = Depends(get_service)):
    return service.list_views(connection_id)


@router.post("/connections/{connection_id}/views/preview", response_model=ViewPreviewResult)
def preview_view(
    connection_id: str,
    body: ViewPreviewRequest,
    timeout: Optional[float] = Query(None, gt=0),
    service: ViewService = Depends(get_service),
):
    """Run a definition read-only and return at most 1000 rows."""
    return service.preview(connection_id, body, timeout=timeout)


# =============================================================================
# Per view
# =============================================================================

@router.get("/views/{view_id}", response_model=DatabaseView)
def get_view(view_id: str, service: ViewService = Depends(get_service)):
    return service.get_view(view_id)


@router.patch("/views/{view_id}", response_model=DatabaseView)
def update_view(
    view_id: str,
    body: UpdateViewRequest,
    actor: str = Depends(get_actor),
    service: ViewService = Depends(get_service),
):
    """Update a view. A changed definition records a new minor version."""
    return service.update_view(view_id, body, actor)


@router.get("/views/{view_id}/versions", response_model=List[ViewVersion])
def list_versions(view_id: str, service: ViewService = Depends(get_service)):
    """Version history, newest first."""
    return service.list_versions(view_id)


@router.get("/views/{view_id}/versions/{version}", response_model=ViewVersion)
def get_version(view_id: str, version: str, service: ViewService = Depends(get_service)):
    return service.get_version(view_id, version)


@router.get("/views/{view_id}/dependencies", response_model=List[ViewDependency])
def get_dependencies(view_id: str, service: ViewService = Depends(get_service)):
    """Stored dependencies, re-checked against the connection catalog."""
    return service.check_dependencies(view_id)


@router.post("/views/{view_id}/analyze-performance", response_model=DatabaseView)
def analyze_performance(
    view_id: str,
    timeout: Optional[float] = Query(None, gt=0),
    service: ViewService = Depends(get_service),
):
    """Refresh performanceMetrics from an EXPLAIN of the current definition."""
    return service.refresh_metrics(view_id, timeout=timeout)
