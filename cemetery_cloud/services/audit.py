"""
Audit recorder.

Writes one AuditLog row per mutation in its own session, after the
mutation has committed. A failure here is diagnostic only: it is logged
and handed back as an Outcome, never raised and never retried.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from cemetery_cloud.models.audit import AuditLog
from cemetery_cloud.services.outcome import Outcome

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    action: str
    entity_type: str
    entity_id: Optional[int] = None
    cemetery_id: Optional[int] = None
    plot_code: Optional[str] = None
    actor_username: Optional[str] = None
    actor_role: Optional[str] = None
    ip_address: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class AuditRecorder:
    """Append-only writer for audit_logs."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(self, entry: AuditEntry) -> Outcome:
        db = None
        try:
            db = self.session_factory()
            db.add(AuditLog(
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                cemetery_id=entry.cemetery_id,
                plot_code=entry.plot_code,
                actor_username=entry.actor_username,
                actor_role=entry.actor_role,
                ip_address=entry.ip_address,
                details=entry.details or {},
            ))
            db.commit()
            return Outcome.success()
        except Exception as exc:
            # The store may be unreachable; the caller's mutation already stands.
            logger.warning(
                "Audit skipped: action=%s entity_id=%s error=%s",
                entry.action, entry.entity_id, exc,
            )
            if db is not None:
                try:
                    db.rollback()
                except Exception:
                    logger.debug("Audit rollback failed", exc_info=True)
            return Outcome.failure(str(exc))
        finally:
            if db is not None:
                db.close()
