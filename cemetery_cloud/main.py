"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cemetery_cloud.config import Settings
from cemetery_cloud.database import Base, build_engine, build_session_factory, get_db
from cemetery_cloud.api.routes import router
from cemetery_cloud.api.schemas import PublicSearchResult
# Import models to register them with SQLAlchemy Base
from cemetery_cloud.models.domain import Cemetery, Plot, DeceasedRecord
from cemetery_cloud.models.audit import AuditLog
from cemetery_cloud.services.audit import AuditRecorder
from cemetery_cloud.services.auth import TokenAuthority, UserDirectory
from cemetery_cloud.services.errors import ServiceError, Unauthenticated
from cemetery_cloud.services.notifier import Notifier

logger = logging.getLogger(__name__)

PUBLIC_SEARCH_LIMIT = 50


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("App mode = %s (isDemo=%s)", settings.app_mode, settings.is_demo)
    logger.info("Plots per cemetery limit = %s", settings.plots_per_cemetery_limit)
    logger.info(
        "Email enabled = %s (recipients: %s)",
        settings.email_enabled, len(settings.notify_to),
    )
    # SMTP handshake blocks; keep it off the event loop
    await run_in_threadpool(app.state.notifier.verify)
    yield
    await run_in_threadpool(app.state.notifier.shutdown, wait=True)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    notifier: Optional[Notifier] = None,
    user_directory: Optional[UserDirectory] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators can be injected (tests pass an in-memory session factory
    and a recording notifier); anything omitted is built from settings.
    """
    settings = settings or Settings.from_env()
    if session_factory is None:
        engine = build_engine(settings.database_url)
        # Create database tables
        Base.metadata.create_all(bind=engine)
        session_factory = build_session_factory(engine)

    app = FastAPI(
        title="Cemetery Cloud",
        description="Cemetery plot and burial records with audit trail and email notifications.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.audit_recorder = AuditRecorder(session_factory)
    app.state.notifier = notifier or Notifier(settings)
    app.state.user_directory = user_directory or UserDirectory()
    app.state.token_authority = TokenAuthority(settings.jwt_secret, settings.token_ttl_hours)

    # The map client is served from other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    register_error_handlers(app)
    app.include_router(router, prefix="/api", tags=["Cemetery"])
    register_public_routes(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error(request: Request, exc: ServiceError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)

    @app.exception_handler(SQLAlchemyError)
    async def database_error(request: Request, exc: SQLAlchemyError):
        logger.exception("%s %s failed", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Database error"})


def register_public_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health_check(db: Session = Depends(get_db)):
        try:
            db_time = db.execute(text("SELECT CURRENT_TIMESTAMP")).scalar()
        except SQLAlchemyError as exc:
            logger.error("Health check failed: %s", exc)
            return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})
        if isinstance(db_time, datetime):
            db_time = db_time.isoformat()
        return {"ok": True, "dbTime": db_time}

    @app.get("/public/search", response_model=List[PublicSearchResult])
    def public_search(q: str = "", db: Session = Depends(get_db)):
        """Unauthenticated lookup of live plots by owner name or plot code."""
        term = q.strip()
        if len(term) < 2:
            raise HTTPException(status_code=400, detail="Min 2 chars")
        pattern = f"%{term}%"
        rows = db.query(
            Plot.plot_code,
            Plot.status,
            Plot.row_num,
            Plot.col_num,
            Cemetery.name.label("cemetery_name"),
        ).join(
            Cemetery, Cemetery.id == Plot.cemetery_id
        ).filter(
            (Plot.owner_name.ilike(pattern)) | (Plot.plot_code.ilike(pattern)),
            Plot.deleted_at.is_(None)
        ).order_by(
            Cemetery.name, Plot.plot_code
        ).limit(PUBLIC_SEARCH_LIMIT).all()
        return [PublicSearchResult(**row._asdict()) for row in rows]


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=3000)
