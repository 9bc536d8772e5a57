"""FastAPI dependencies: settings, identity, permission gate and orchestrator wiring."""
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from cemetery_cloud.config import Settings
from cemetery_cloud.database import get_db
from cemetery_cloud.services.auth import AuthenticatedUser, bearer_token, require_full_permission
from cemetery_cloud.services.orchestrator import MutationOrchestrator, RequestActor


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    """Resolve the caller from the bearer token; raises Unauthenticated."""
    authority = request.app.state.token_authority
    return authority.verify(bearer_token(authorization))


def get_full_user(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Gate for mutating routes; raises Forbidden for read-only roles."""
    return require_full_permission(user)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else None


def get_actor(request: Request, user: AuthenticatedUser = Depends(get_full_user)) -> RequestActor:
    return RequestActor(username=user.username, role=user.role, ip_address=client_ip(request))


def get_orchestrator(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> MutationOrchestrator:
    state = request.app.state
    return MutationOrchestrator(
        db,
        audit=state.audit_recorder,
        notifier=state.notifier,
        plot_limit=settings.plots_per_cemetery_limit,
    )
