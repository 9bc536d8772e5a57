"""Pytest configuration and shared fixtures."""
import pytest
from fastapi.testclient import TestClient

from cemetery_cloud.config import Settings
from cemetery_cloud.database import Base, build_engine, build_session_factory
from cemetery_cloud.main import create_app
from cemetery_cloud.models.domain import Cemetery
from cemetery_cloud.models.audit import AuditLog
from cemetery_cloud.services.audit import AuditRecorder
from cemetery_cloud.services.auth import AuthenticatedUser
from cemetery_cloud.services.orchestrator import MutationOrchestrator, RequestActor
from cemetery_cloud.services.outcome import Outcome


class RecordingNotifier:
    """Stands in for the SMTP notifier; keeps every message it is asked to send."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.sent = []
        self.verified = 0
        self.shut_down = False

    def send(self, subject, body_html):
        if not self.enabled:
            return Outcome.skip("disabled in test")
        self.sent.append((subject, body_html))
        return Outcome.success()

    def verify(self):
        self.verified += 1
        return Outcome.skip("test")

    def shutdown(self, wait=False):
        self.shut_down = True


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        plots_per_cemetery_limit=10,
        disable_email=True,
    )


@pytest.fixture
def session_factory(tmp_path):
    """A fresh SQLite file per test so the request and audit sessions see the same data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_recorder(session_factory):
    return AuditRecorder(session_factory)


@pytest.fixture
def orchestrator(db_session, audit_recorder, notifier):
    return MutationOrchestrator(db_session, audit_recorder, notifier, plot_limit=10)


@pytest.fixture
def actor():
    return RequestActor(username="manager", role="manager", ip_address="10.0.0.7")


@pytest.fixture
def cemetery(db_session):
    """A cemetery with no plots."""
    cemetery = Cemetery(name="Green Hills")
    db_session.add(cemetery)
    db_session.commit()
    db_session.refresh(cemetery)
    return cemetery


@pytest.fixture
def plot(orchestrator, cemetery, actor):
    return orchestrator.create_plot(
        {"cemetery_id": cemetery.id, "plot_code": "A-01", "owner_name": "Ruth Mbeki", "gender": "F"},
        actor,
    )


@pytest.fixture
def app(settings, session_factory, notifier):
    return create_app(settings=settings, session_factory=session_factory, notifier=notifier)


@pytest.fixture
def client(app):
    return TestClient(app)


def _headers(app, username, role, permission):
    token = app.state.token_authority.issue(AuthenticatedUser(username, role, permission))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def manager_headers(app):
    return _headers(app, "manager", "manager", "full")


@pytest.fixture
def supervisor_headers(app):
    return _headers(app, "supervisor", "supervisor", "read")


@pytest.fixture
def read_audit(session_factory):
    """Read audit rows in a fresh session."""
    def _read(**filters):
        session = session_factory()
        try:
            return session.query(AuditLog).filter_by(**filters).order_by(AuditLog.id).all()
        finally:
            session.close()
    return _read


@pytest.fixture
def count_rows(session_factory):
    def _count(model, **filters):
        session = session_factory()
        try:
            return session.query(model).filter_by(**filters).count()
        finally:
            session.close()
    return _count
