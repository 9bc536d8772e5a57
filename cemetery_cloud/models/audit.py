"""
Internal audit log model - NOT a user-facing domain object.

Rows are written by the AuditRecorder after a mutation has committed.
There is no read endpoint; the table exists for operators.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON
from cemetery_cloud.database import Base


class AuditLog(Base):
    """
    Immutable record of a mutating action.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - Actor identity is captured at write time, not joined later
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    action = Column(String, nullable=False, index=True)  # e.g., "UPDATE_PLOT"
    entity_type = Column(String, nullable=False)  # "plot" or "deceased"
    entity_id = Column(Integer, nullable=True, index=True)
    cemetery_id = Column(Integer, nullable=True)
    plot_code = Column(String, nullable=True)
    actor_username = Column(String, nullable=True)
    actor_role = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)


class AuditAction:
    """Action tags written to audit_logs.action."""
    CREATE_PLOT = "CREATE_PLOT"
    UPDATE_PLOT = "UPDATE_PLOT"
    DELETE_PLOT = "DELETE_PLOT"
    CREATE_DECEASED = "CREATE_DECEASED"
    UPDATE_DECEASED = "UPDATE_DECEASED"


class EntityType:
    PLOT = "plot"
    DECEASED = "deceased"
