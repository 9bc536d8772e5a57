"""
Mutation orchestrator for plots and deceased records.

Every mutation runs the same three phases, in order:

1. validate and persist - the only phase whose outcome the caller sees
2. audit               - one AuditLog row, failures logged and discarded
3. notify              - email summary queued in the background, failures
                         logged and discarded

Phase 2 starts only after phase 1 has committed; phase 3 starts only after
phase 2 was attempted. All values used by phases 2 and 3 are read from the
refreshed rows at the end of phase 1, so neither phase touches the request
session.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from cemetery_cloud.models.audit import AuditAction, EntityType
from cemetery_cloud.models.domain import (
    Cemetery,
    DeceasedRecord,
    Plot,
    DECEASED_FIELDS,
    PLOT_UPDATABLE_FIELDS,
)
from cemetery_cloud.models.enums import BurialType, PlotStatus
from cemetery_cloud.services.audit import AuditEntry, AuditRecorder
from cemetery_cloud.services.errors import CapacityExceeded, NotFound, ValidationFailed
from cemetery_cloud.services.notifier import Notifier, escape

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2


@dataclass(frozen=True)
class RequestActor:
    """Who is acting and from where, captured once per request."""
    username: Optional[str]
    role: Optional[str]
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class _PlotRef:
    """Plain copy of the plot fields later phases need; safe after commit."""
    id: int
    cemetery_id: int
    plot_code: str
    cemetery_name: str

    @classmethod
    def of(cls, plot: Plot) -> "_PlotRef":
        return cls(plot.id, plot.cemetery_id, plot.plot_code, plot.cemetery.name)


class MutationOrchestrator:
    """Runs validate/persist, audit and notify for every write."""

    def __init__(
        self,
        db: Session,
        audit: AuditRecorder,
        notifier: Notifier,
        plot_limit: int = 10,
    ):
        self.db = db
        self.audit = audit
        self.notifier = notifier
        self.plot_limit = plot_limit

    # ------------------------------------------------------------------
    # Plots
    # ------------------------------------------------------------------

    def create_plot(self, data: Dict[str, Any], actor: RequestActor) -> Plot:
        """
        Create a plot in a cemetery.

        Rules:
        - cemetery_id and a non-blank plot_code are required
        - the cemetery must exist
        - plot_code must be free among the cemetery's live plots
        - refused once the cemetery holds plot_limit live plots
        - status defaults to Available
        """
        cemetery_id = data.get("cemetery_id")
        plot_code = str(data.get("plot_code") or "").strip()
        if not cemetery_id or not plot_code:
            raise ValidationFailed("cemetery_id and plot_code are required")

        cemetery = self.db.get(Cemetery, cemetery_id)
        if cemetery is None:
            raise NotFound("Cemetery not found")

        # Read-then-insert: concurrent creations may overshoot by one.
        live_count = self.db.query(func.count(Plot.id)).filter(
            Plot.cemetery_id == cemetery_id,
            Plot.deleted_at.is_(None)
        ).scalar() or 0
        if live_count >= self.plot_limit:
            raise CapacityExceeded(
                f"Plot limit reached ({self.plot_limit} plots per cemetery)"
            )

        duplicate = self.db.query(Plot.id).filter(
            Plot.cemetery_id == cemetery_id,
            Plot.plot_code == plot_code,
            Plot.deleted_at.is_(None)
        ).first()
        if duplicate:
            raise ValidationFailed(f"plot_code {plot_code} already exists in this cemetery")

        plot = Plot(
            cemetery_id=cemetery_id,
            plot_code=plot_code,
            status=data.get("status") or PlotStatus.AVAILABLE.value,
            owner_name=data.get("owner_name"),
            gender=data.get("gender"),
            payment_date=data.get("payment_date"),
            row_num=data.get("row_num"),
            col_num=data.get("col_num"),
            coords=data.get("coords"),
        )
        cemetery_name = cemetery.name
        self._commit(plot)

        self._audit(AuditEntry(
            action=AuditAction.CREATE_PLOT,
            entity_type=EntityType.PLOT,
            entity_id=plot.id,
            cemetery_id=plot.cemetery_id,
            plot_code=plot.plot_code,
            details=_plot_summary(plot),
        ), actor)
        self._notify(*_plot_created_message(plot, cemetery_name, actor))
        return plot

    def update_plot(self, plot_id: int, data: Dict[str, Any], actor: RequestActor) -> Plot:
        """
        Coalescing update: a field changes only when the request carries a
        non-null value for it. Deleted plots are treated as missing.
        """
        plot = self._live_plot(plot_id, "Plot not found")
        cemetery_name = plot.cemetery.name
        before = _plot_snapshot(plot)

        for field_name in PLOT_UPDATABLE_FIELDS:
            value = data.get(field_name)
            if value is not None:
                setattr(plot, field_name, value)
        plot.updated_at = datetime.utcnow()
        self._commit(plot)
        after = _plot_snapshot(plot)

        self._audit(AuditEntry(
            action=AuditAction.UPDATE_PLOT,
            entity_type=EntityType.PLOT,
            entity_id=plot.id,
            cemetery_id=plot.cemetery_id,
            plot_code=plot.plot_code,
            details={
                "before": _audit_view(before),
                "after": _audit_view(after),
            },
        ), actor)
        self._notify(*_plot_updated_message(plot, cemetery_name, before, after, actor))
        return plot

    def delete_plot(self, plot_id: int, actor: RequestActor) -> Plot:
        """Soft delete: stamp deleted_at. The row and its deceased records stay."""
        plot = self._live_plot(plot_id, "Plot not found or already deleted")
        cemetery_name = plot.cemetery.name

        now = datetime.utcnow()
        plot.deleted_at = now
        plot.updated_at = now
        self._commit(plot)

        self._audit(AuditEntry(
            action=AuditAction.DELETE_PLOT,
            entity_type=EntityType.PLOT,
            entity_id=plot.id,
            cemetery_id=plot.cemetery_id,
            plot_code=plot.plot_code,
            details=_plot_summary(plot),
        ), actor)
        self._notify(*_plot_deleted_message(plot, cemetery_name, actor))
        return plot

    # ------------------------------------------------------------------
    # Deceased records
    # ------------------------------------------------------------------

    def create_deceased(self, plot_id: int, data: Dict[str, Any], actor: RequestActor) -> DeceasedRecord:
        """
        Add a deceased record to a live plot.

        The full name is required (at least two characters once trimmed);
        burial type is uppercased and defaults to BURIAL.
        """
        full_name = _validated_name(data.get("deceased_full_name"))
        plot = _PlotRef.of(self._live_plot(plot_id, "Plot not found"))

        values = {f: data.get(f) for f in DECEASED_FIELDS}
        values["deceased_full_name"] = full_name
        values["burial_type"] = _burial_type(data.get("burial_type"))
        record = DeceasedRecord(plot_id=plot.id, **values)
        self._commit(record)

        self._audit(AuditEntry(
            action=AuditAction.CREATE_DECEASED,
            entity_type=EntityType.DECEASED,
            entity_id=record.id,
            cemetery_id=plot.cemetery_id,
            plot_code=plot.plot_code,
            details={
                "plot_id": plot.id,
                "deceased_full_name": record.deceased_full_name,
                "burial_type": record.burial_type,
            },
        ), actor)
        self._notify(*_deceased_created_message(record, plot, actor))
        return record

    def update_deceased(self, record_id: int, data: Dict[str, Any], actor: RequestActor) -> DeceasedRecord:
        """
        Coalescing update over DECEASED_FIELDS.

        - omitted or null: keep the stored value
        - "" : clear the stored value (set to null)
        """
        record = self.db.get(DeceasedRecord, record_id)
        if record is None:
            raise NotFound("Record not found")

        changes: Dict[str, Any] = {}
        for field_name in DECEASED_FIELDS:
            if data.get(field_name) is None:
                continue
            value = data[field_name]
            changes[field_name] = None if value == "" else value

        if "deceased_full_name" in changes:
            changes["deceased_full_name"] = _validated_name(changes["deceased_full_name"])
        if "burial_type" in changes:
            changes["burial_type"] = _burial_type(changes["burial_type"])

        plot = _PlotRef.of(record.plot)
        for field_name, value in changes.items():
            setattr(record, field_name, value)
        record.updated_at = datetime.utcnow()
        self._commit(record)

        updated_fields = [f for f in DECEASED_FIELDS if f in changes]
        self._audit(AuditEntry(
            action=AuditAction.UPDATE_DECEASED,
            entity_type=EntityType.DECEASED,
            entity_id=record.id,
            cemetery_id=plot.cemetery_id,
            plot_code=plot.plot_code,
            details={"plot_id": plot.id, "updated_fields": updated_fields},
        ), actor)
        self._notify(*_deceased_updated_message(record, plot, updated_fields, actor))
        return record

    # ------------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------------

    def _live_plot(self, plot_id: int, missing_message: str) -> Plot:
        plot = self.db.query(Plot).filter(
            Plot.id == plot_id,
            Plot.deleted_at.is_(None)
        ).first()
        if plot is None:
            raise NotFound(missing_message)
        return plot

    def _commit(self, instance) -> None:
        """End of phase 1: commit and reload so later phases never hit this session."""
        self.db.add(instance)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(instance)

    def _audit(self, entry: AuditEntry, actor: RequestActor) -> None:
        entry.actor_username = actor.username
        entry.actor_role = actor.role
        entry.ip_address = actor.ip_address
        outcome = self.audit.append(entry)
        if not outcome.ok:
            # Already logged by the recorder; the mutation stands regardless.
            logger.debug("Audit outcome discarded for %s %s", entry.action, entry.entity_id)

    def _notify(self, subject: str, body_html: str) -> None:
        outcome = self.notifier.send(subject, body_html)
        if outcome.skipped:
            logger.debug("Notification skipped: %s", outcome.detail)


# ----------------------------------------------------------------------
# Validation helpers
# ----------------------------------------------------------------------

def _validated_name(value: Any) -> str:
    name = str(value or "").strip()
    if len(name) < MIN_NAME_LENGTH:
        raise ValidationFailed("deceased_full_name is required")
    return name


def _burial_type(value: Any) -> str:
    text = str(value or "").strip().upper()
    return text or BurialType.BURIAL.value


# ----------------------------------------------------------------------
# Snapshots
# ----------------------------------------------------------------------

def _plot_summary(plot: Plot) -> Dict[str, Any]:
    return {"status": plot.status, "owner_name": plot.owner_name, "gender": plot.gender}


def _plot_snapshot(plot: Plot) -> Dict[str, Any]:
    return {
        "status": plot.status,
        "owner_name": plot.owner_name,
        "gender": plot.gender,
        "row_num": plot.row_num,
        "col_num": plot.col_num,
        "has_coords": bool(plot.coords),
    }


def _audit_view(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """The audit trail keeps only the fields people ask about later."""
    keys = ("status", "owner_name", "gender", "has_coords")
    return {k: snapshot[k] for k in keys}


# ----------------------------------------------------------------------
# Notification messages
# ----------------------------------------------------------------------

def _subject(text: str) -> str:
    # Header values cannot carry line breaks
    return " ".join(text.split())


def _actor_line(label: str, actor: RequestActor) -> str:
    return f"<p><b>{label}:</b> {escape(actor.username)} ({escape(actor.role)})</p>"


def _wrap(title: str, *lines: str) -> str:
    inner = "\n".join(lines)
    return f'<div style="font-family:Arial,sans-serif">\n<h2>{escape(title)}</h2>\n{inner}\n</div>'


def _pre(snapshot: Dict[str, Any]) -> str:
    rows = "\n".join(f"{key}: {value if value is not None else ''}" for key, value in snapshot.items())
    return f"<pre>{escape(rows)}</pre>"


def _fmt_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def _plot_created_message(plot: Plot, cemetery_name: str, actor: RequestActor) -> Tuple[str, str]:
    subject = _subject(f"✅ Plot Created: {plot.plot_code} ({cemetery_name})")
    body = _wrap(
        "Plot Created",
        f"<p><b>Cemetery:</b> {escape(cemetery_name)}</p>",
        f"<p><b>Plot:</b> {escape(plot.plot_code)}</p>",
        f"<p><b>Status:</b> {escape(plot.status)}</p>",
        "<hr/>",
        _actor_line("By", actor),
    )
    return subject, body


def _plot_updated_message(
    plot: Plot,
    cemetery_name: str,
    before: Dict[str, Any],
    after: Dict[str, Any],
    actor: RequestActor,
) -> Tuple[str, str]:
    subject = _subject(f"✏️ Plot Updated: {plot.plot_code} ({cemetery_name})")
    body = _wrap(
        "Plot Updated",
        f"<p><b>Cemetery:</b> {escape(cemetery_name)}</p>",
        f"<p><b>Plot:</b> {escape(plot.plot_code)}</p>",
        _actor_line("User", actor),
        "<hr/>",
        "<h3>Before</h3>",
        _pre(before),
        "<h3>After</h3>",
        _pre(after),
    )
    return subject, body


def _plot_deleted_message(plot: Plot, cemetery_name: str, actor: RequestActor) -> Tuple[str, str]:
    subject = _subject(f"🗑️ Plot Deleted: {plot.plot_code} ({cemetery_name})")
    body = _wrap(
        "Plot Deleted",
        f"<p><b>Cemetery:</b> {escape(cemetery_name)}</p>",
        f"<p><b>Plot:</b> {escape(plot.plot_code)}</p>",
        _actor_line("Deleted by", actor),
    )
    return subject, body


def _deceased_created_message(
    record: DeceasedRecord,
    plot: _PlotRef,
    actor: RequestActor,
) -> Tuple[str, str]:
    subject = _subject(f"⚰️ Deceased record added: {record.deceased_full_name}")
    body = _wrap(
        "Deceased record added",
        f"<p><b>Name:</b> {escape(record.deceased_full_name)}</p>",
        f"<p><b>Cemetery:</b> {escape(plot.cemetery_name)}</p>",
        f"<p><b>Plot:</b> {escape(plot.plot_code)}</p>",
        f"<p><b>Type:</b> {escape(record.burial_type)}</p>",
        f"<p><b>Burial date:</b> {escape(_fmt_date(record.burial_date))}</p>",
        "<hr/>",
        _actor_line("By", actor),
    )
    return subject, body


def _deceased_updated_message(
    record: DeceasedRecord,
    plot: _PlotRef,
    updated_fields: List[str],
    actor: RequestActor,
) -> Tuple[str, str]:
    subject = _subject(f"✏️ Deceased record updated: {record.deceased_full_name}")
    body = _wrap(
        "Deceased record updated",
        f"<p><b>Name:</b> {escape(record.deceased_full_name)}</p>",
        f"<p><b>Cemetery:</b> {escape(plot.cemetery_name)}</p>",
        f"<p><b>Plot:</b> {escape(plot.plot_code)}</p>",
        f"<p><b>Fields:</b> {escape(', '.join(updated_fields) or 'none')}</p>",
        "<hr/>",
        _actor_line("By", actor),
    )
    return subject, body
