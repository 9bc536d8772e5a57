"""API routes for cemeteries, plots and deceased records."""
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from typing import List

from cemetery_cloud.config import Settings
from cemetery_cloud.database import get_db
from cemetery_cloud.models.domain import Cemetery, Plot, DeceasedRecord
from cemetery_cloud.services.auth import AuthenticatedUser
from cemetery_cloud.services.orchestrator import MutationOrchestrator, RequestActor
from cemetery_cloud.api.deps import get_actor, get_current_user, get_orchestrator, get_settings
from cemetery_cloud.api.schemas import (
    LoginRequest,
    LoginResponse,
    CemeteryResponse,
    PlotCreate,
    PlotUpdate,
    PlotResponse,
    DeleteResponse,
    DeceasedCreate,
    DeceasedUpdate,
    DeceasedResponse,
    PublicConfig,
    ErrorResponse,
)

router = APIRouter()

AUTH_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing, invalid or expired token"},
}
MUTATION_ERRORS = {
    **AUTH_ERRORS,
    403: {"model": ErrorResponse, "description": "Read-only role"},
    404: {"model": ErrorResponse, "description": "Entity missing or soft-deleted"},
}


# Auth endpoints
@router.post("/auth/login", response_model=LoginResponse, responses=AUTH_ERRORS)
def login(credentials: LoginRequest, request: Request):
    """Exchange username/password for a signed bearer token valid for 8 hours."""
    state = request.app.state
    user = state.user_directory.authenticate(credentials.username, credentials.password)
    return {"token": state.token_authority.issue(user), "user": user.as_dict()}


@router.get("/config", response_model=PublicConfig)
def public_config(settings: Settings = Depends(get_settings)):
    return PublicConfig(
        appMode=settings.app_mode,
        isDemo=settings.is_demo,
        plotsPerCemeteryLimit=settings.plots_per_cemetery_limit,
        emailEnabled=settings.email_enabled,
    )


# Cemetery endpoints
@router.get("/cemeteries", response_model=List[CemeteryResponse], responses=AUTH_ERRORS)
def list_cemeteries(
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
):
    return db.query(Cemetery).order_by(Cemetery.name).all()


@router.get("/cemeteries/{cemetery_id}/plots", response_model=List[PlotResponse], responses=AUTH_ERRORS)
def list_plots(
    cemetery_id: int,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    user: AuthenticatedUser = Depends(get_current_user),
):
    """
    List plots of a cemetery ordered by plot code.
    Soft-deleted plots are hidden unless include_deleted=true.
    """
    query = db.query(Plot).filter(Plot.cemetery_id == cemetery_id)
    if not include_deleted:
        query = query.filter(Plot.deleted_at.is_(None))
    return query.order_by(Plot.plot_code).limit(settings.plots_per_cemetery_limit).all()


# Plot endpoints
@router.post("/plots", response_model=PlotResponse, status_code=status.HTTP_201_CREATED, responses={
    **MUTATION_ERRORS,
    400: {"model": ErrorResponse, "description": "Missing fields, duplicate code or plot limit reached"},
})
def create_plot(
    plot_data: PlotCreate,
    actor: RequestActor = Depends(get_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """Create a plot. Refused once the cemetery holds the configured number of live plots."""
    return orchestrator.create_plot(plot_data.model_dump(exclude_unset=True), actor)


@router.patch("/plots/{plot_id}", response_model=PlotResponse, responses=MUTATION_ERRORS)
def update_plot(
    plot_id: int,
    plot_data: PlotUpdate,
    actor: RequestActor = Depends(get_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """Partial update: only fields sent with a non-null value change."""
    return orchestrator.update_plot(plot_id, plot_data.model_dump(exclude_unset=True), actor)


@router.delete("/plots/{plot_id}", response_model=DeleteResponse, responses=MUTATION_ERRORS)
def delete_plot(
    plot_id: int,
    actor: RequestActor = Depends(get_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """Soft delete. The plot stays in storage and shows up with include_deleted=true."""
    orchestrator.delete_plot(plot_id, actor)
    return DeleteResponse(ok=True)


# Deceased record endpoints
@router.get("/plots/{plot_id}/deceased", response_model=List[DeceasedResponse], responses=AUTH_ERRORS)
def list_deceased(
    plot_id: int,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
):
    """Burial history of a plot, most recent burial first."""
    return db.query(DeceasedRecord).filter(
        DeceasedRecord.plot_id == plot_id
    ).order_by(
        DeceasedRecord.burial_date.desc().nulls_last(),
        DeceasedRecord.id.desc()
    ).all()


@router.post("/plots/{plot_id}/deceased", response_model=DeceasedResponse, status_code=status.HTTP_201_CREATED, responses={
    **MUTATION_ERRORS,
    400: {"model": ErrorResponse, "description": "deceased_full_name missing or too short"},
})
def create_deceased(
    plot_id: int,
    record_data: DeceasedCreate,
    actor: RequestActor = Depends(get_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.create_deceased(plot_id, record_data.model_dump(exclude_unset=True), actor)


@router.patch("/deceased/{record_id}", response_model=DeceasedResponse, responses=MUTATION_ERRORS)
def update_deceased(
    record_id: int,
    record_data: DeceasedUpdate,
    actor: RequestActor = Depends(get_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """
    Partial update of a deceased record.
    An empty string clears a field; an omitted or null field is left as is.
    """
    return orchestrator.update_deceased(record_id, record_data.model_dump(exclude_unset=True), actor)
