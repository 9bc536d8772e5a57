"""
Tests for the audit and notification phases.

These tests prove:
- Every successful mutation writes exactly one audit entry
- Audit and notification failures never reach the caller
- Audit is attempted before notification, and only after a commit
- Notification bodies escape caller-supplied text
"""
import dataclasses
import logging
import smtplib
from concurrent.futures import Future

import pytest
from sqlalchemy.exc import OperationalError

from cemetery_cloud.config import Settings
from cemetery_cloud.database import build_engine, build_session_factory
from cemetery_cloud.models.audit import AuditAction
from cemetery_cloud.models.domain import Plot
from cemetery_cloud.services.audit import AuditEntry, AuditRecorder
from cemetery_cloud.services.errors import CapacityExceeded, ValidationFailed
from cemetery_cloud.services.notifier import Notifier, escape
from cemetery_cloud.services.orchestrator import MutationOrchestrator
from cemetery_cloud.services.outcome import Outcome


def _unreachable_store():
    raise OperationalError("INSERT INTO audit_logs", {}, Exception("connection refused"))


class ImmediateExecutor:
    """Runs submitted work inline so delivery can be asserted synchronously."""

    def submit(self, fn, *args):
        future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def smtp_settings():
    return Settings(
        smtp_host="smtp.example.org",
        smtp_port=587,
        smtp_user="mailer",
        smtp_pass="secret",
        mail_from="records@example.org",
        notify_to=["office@example.org", "board@example.org"],
    )


class TestAuditEntries:
    """One audit entry per successful mutation, with matching tag and id."""

    def test_create_plot_audit(self, orchestrator, cemetery, actor, read_audit):
        plot = orchestrator.create_plot(
            {"cemetery_id": cemetery.id, "plot_code": "A-01", "owner_name": "Ruth Mbeki"}, actor
        )

        rows = read_audit(action=AuditAction.CREATE_PLOT)
        assert len(rows) == 1
        audit = rows[0]
        assert audit.entity_type == "plot"
        assert audit.entity_id == plot.id
        assert audit.cemetery_id == cemetery.id
        assert audit.plot_code == "A-01"
        assert audit.actor_username == "manager"
        assert audit.actor_role == "manager"
        assert audit.ip_address == "10.0.0.7"
        assert audit.details == {"status": "Available", "owner_name": "Ruth Mbeki", "gender": None}

    def test_update_plot_audit_has_before_and_after(self, orchestrator, plot, actor, read_audit):
        orchestrator.update_plot(plot.id, {"status": "Occupied", "coords": {"lat": 1.0, "lng": 2.0}}, actor)

        rows = read_audit(action=AuditAction.UPDATE_PLOT, entity_id=plot.id)
        assert len(rows) == 1
        details = rows[0].details
        assert details["before"] == {
            "status": "Available", "owner_name": "Ruth Mbeki", "gender": "F", "has_coords": False,
        }
        assert details["after"] == {
            "status": "Occupied", "owner_name": "Ruth Mbeki", "gender": "F", "has_coords": True,
        }

    def test_delete_plot_audit(self, orchestrator, plot, actor, read_audit):
        orchestrator.delete_plot(plot.id, actor)

        rows = read_audit(action=AuditAction.DELETE_PLOT, entity_id=plot.id)
        assert len(rows) == 1
        assert rows[0].details["owner_name"] == "Ruth Mbeki"

    def test_deceased_audits(self, orchestrator, plot, actor, read_audit):
        record = orchestrator.create_deceased(
            plot.id, {"deceased_full_name": "Ruth Mbeki", "burial_type": "cremation"}, actor
        )
        orchestrator.update_deceased(record.id, {"notes": "Moved headstone", "id_number": None}, actor)

        created = read_audit(action=AuditAction.CREATE_DECEASED)
        assert len(created) == 1
        assert created[0].entity_type == "deceased"
        assert created[0].entity_id == record.id
        assert created[0].details == {
            "plot_id": plot.id, "deceased_full_name": "Ruth Mbeki", "burial_type": "CREMATION",
        }

        updated = read_audit(action=AuditAction.UPDATE_DECEASED)
        assert len(updated) == 1
        assert updated[0].entity_id == record.id
        assert updated[0].details["updated_fields"] == ["notes"]

    def test_audit_written_when_notifications_unconfigured(
        self, db_session, audit_recorder, cemetery, actor, read_audit
    ):
        unconfigured = Notifier(Settings(), executor=ImmediateExecutor())
        orchestrator = MutationOrchestrator(db_session, audit_recorder, unconfigured)

        plot = orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01"}, actor)

        assert [r.entity_id for r in read_audit(action=AuditAction.CREATE_PLOT)] == [plot.id]

    def test_refused_mutation_writes_no_audit(self, orchestrator, cemetery, actor, read_audit, notifier):
        with pytest.raises(ValidationFailed):
            orchestrator.create_plot({"cemetery_id": cemetery.id}, actor)

        assert read_audit() == []
        assert notifier.sent == []

    def test_capacity_refusal_writes_no_audit(self, db_session, audit_recorder, notifier, cemetery, actor, read_audit):
        orchestrator = MutationOrchestrator(db_session, audit_recorder, notifier, plot_limit=1)
        orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01"}, actor)

        with pytest.raises(CapacityExceeded):
            orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-02"}, actor)

        assert len(read_audit()) == 1
        assert len(notifier.sent) == 1


class TestAuditFailureIsolation:
    """Audit failures are logged and discarded."""

    def test_recorder_returns_failure_instead_of_raising(self, caplog):
        recorder = AuditRecorder(_unreachable_store)

        with caplog.at_level(logging.WARNING):
            outcome = recorder.append(AuditEntry(action=AuditAction.CREATE_PLOT, entity_type="plot", entity_id=1))

        assert outcome.ok is False
        assert "connection refused" in outcome.detail
        assert "Audit skipped" in caplog.text

    def test_recorder_survives_missing_table(self):
        # An engine with no schema: the INSERT itself fails
        empty = build_session_factory(build_engine("sqlite://"))
        outcome = AuditRecorder(empty).append(AuditEntry(action=AuditAction.DELETE_PLOT, entity_type="plot"))
        assert outcome.ok is False

    def test_mutation_succeeds_and_notifies_when_audit_fails(self, db_session, notifier, cemetery, actor):
        orchestrator = MutationOrchestrator(db_session, AuditRecorder(_unreachable_store), notifier)

        plot = orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01"}, actor)

        assert plot.id is not None
        assert db_session.query(Plot).count() == 1
        assert len(notifier.sent) == 1


class TestPhaseOrdering:
    """Audit runs after commit and before notification."""

    def test_audit_before_notify(self, db_session, session_factory, cemetery, actor):
        events = []

        class SpyRecorder(AuditRecorder):
            def append(self, entry):
                # The mutation is already committed when the audit phase starts
                session = session_factory()
                try:
                    committed = session.query(Plot).filter(Plot.id == entry.entity_id).count()
                finally:
                    session.close()
                events.append(("audit", entry.action, committed))
                return super().append(entry)

        class SpyNotifier:
            def send(self, subject, body_html):
                events.append(("notify", subject, None))
                return Outcome.success()

        orchestrator = MutationOrchestrator(db_session, SpyRecorder(session_factory), SpyNotifier())
        orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01"}, actor)

        assert [e[0] for e in events] == ["audit", "notify"]
        assert events[0][1] == AuditAction.CREATE_PLOT
        assert events[0][2] == 1


class TestNotificationContent:
    """Message subjects and escaped bodies."""

    def test_escape_reserved_characters(self):
        assert escape("<b>\"Tom\" & 'Jerry'</b>") == (
            "&lt;b&gt;&quot;Tom&quot; &amp; &#x27;Jerry&#x27;&lt;/b&gt;"
        )
        assert escape(None) == ""
        assert escape(7) == "7"

    def test_created_plot_message(self, orchestrator, cemetery, actor, notifier):
        orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01"}, actor)

        subject, body = notifier.sent[-1]
        assert subject == "✅ Plot Created: A-01 (Green Hills)"
        assert "<b>Cemetery:</b> Green Hills" in body
        assert "<b>Status:</b> Available" in body
        assert "<b>By:</b> manager (manager)" in body

    def test_markup_in_values_is_escaped(self, orchestrator, cemetery, actor, notifier):
        orchestrator.create_plot(
            {"cemetery_id": cemetery.id, "plot_code": "<script>x</script>", "status": "A&B"}, actor
        )

        subject, body = notifier.sent[-1]
        assert "<script>" not in body
        assert "&lt;script&gt;x&lt;/script&gt;" in body
        assert "A&amp;B" in body

    def test_line_breaks_removed_from_subject(self, orchestrator, cemetery, actor, notifier):
        orchestrator.create_plot({"cemetery_id": cemetery.id, "plot_code": "A-01\r\nBcc: x@y.z"}, actor)

        subject, _ = notifier.sent[-1]
        assert "\n" not in subject and "\r" not in subject

    def test_update_message_has_before_and_after(self, orchestrator, plot, actor, notifier):
        orchestrator.update_plot(plot.id, {"status": "Occupied"}, actor)

        subject, body = notifier.sent[-1]
        assert subject.endswith("Plot Updated: A-01 (Green Hills)")
        assert "<h3>Before</h3>" in body and "<h3>After</h3>" in body
        assert "status: Available" in body
        assert "status: Occupied" in body

    def test_deceased_update_notifies(self, orchestrator, plot, actor, notifier):
        record = orchestrator.create_deceased(plot.id, {"deceased_full_name": "Ruth Mbeki"}, actor)
        orchestrator.update_deceased(record.id, {"notes": "x"}, actor)

        subject, body = notifier.sent[-1]
        assert subject.endswith("Deceased record updated: Ruth Mbeki")
        assert "<b>Fields:</b> notes" in body


class TestNotifier:
    """SMTP notifier behaviour with the network patched out."""

    def test_skipped_when_unconfigured(self):
        notifier = Notifier(Settings(), executor=ImmediateExecutor())
        outcome = notifier.send("subject", "<p>body</p>")

        assert outcome.ok is True
        assert outcome.skipped is True

    def test_skipped_when_disabled(self, smtp_settings):
        settings = dataclasses.replace(smtp_settings, disable_email=True)
        assert Notifier(settings, executor=ImmediateExecutor()).send("s", "b").skipped is True

    def test_sends_to_all_recipients(self, smtp_settings, monkeypatch):
        sent = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host, self.port = host, port

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def ehlo(self):
                pass

            def has_extn(self, name):
                return False

            def login(self, user, password):
                assert (user, password) == ("mailer", "secret")

            def send_message(self, message):
                sent.append(message)

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        notifier = Notifier(smtp_settings, executor=ImmediateExecutor())

        outcome = notifier.send("Plot Created", "<p>ok</p>")

        assert outcome.ok is True and outcome.skipped is False
        assert len(sent) == 1
        assert sent[0]["To"] == "office@example.org, board@example.org"
        assert sent[0]["From"] == "records@example.org"
        assert sent[0]["Subject"] == "Plot Created"

    def test_delivery_failure_is_logged_not_raised(self, smtp_settings, monkeypatch, caplog):
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "service not available")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        notifier = Notifier(smtp_settings, executor=ImmediateExecutor())

        with caplog.at_level(logging.ERROR):
            outcome = notifier.send("Plot Created", "<p>ok</p>")

        # Queued successfully; the failure surfaces only in the log
        assert outcome.ok is True
        assert "Email send failed" in caplog.text

    def test_send_after_shutdown_reports_failure(self, smtp_settings):
        notifier = Notifier(smtp_settings)
        notifier.shutdown(wait=True)

        outcome = notifier.send("Plot Created", "<p>ok</p>")
        assert outcome.ok is False


class ScriptedSMTP:
    """Fake SMTP connection that records each call; `fail_on` names the call that raises."""

    instances = []

    def __init__(self, host, port, timeout=None, extensions=("starttls",), fail_on=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.extensions = extensions
        self.fail_on = fail_on
        self.calls = []
        self.closed = False
        ScriptedSMTP.instances.append(self)

    def _record(self, name):
        self.calls.append(name)
        if name == self.fail_on:
            raise smtplib.SMTPAuthenticationError(535, b"authentication failed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def ehlo(self):
        self._record("ehlo")

    def has_extn(self, name):
        return name in self.extensions

    def starttls(self):
        self._record("starttls")

    def login(self, user, password):
        self._record("login")

    def noop(self):
        self._record("noop")

    def send_message(self, message):
        self._record("send_message")


@pytest.fixture
def scripted_smtp(monkeypatch):
    """Patch smtplib.SMTP and SMTP_SSL; returns a setter for per-test behaviour."""
    ScriptedSMTP.instances = []
    options = {}

    def factory(host, port, timeout=None):
        return ScriptedSMTP(host, port, timeout, **options)

    monkeypatch.setattr(smtplib, "SMTP", factory)
    monkeypatch.setattr(smtplib, "SMTP_SSL", factory)
    return options


class TestSmtpConnection:
    """Connection setup shared by verify() and background delivery."""

    def test_verify_upgrades_with_starttls(self, smtp_settings, scripted_smtp):
        outcome = Notifier(smtp_settings, executor=ImmediateExecutor()).verify()

        assert outcome.ok is True and outcome.skipped is False
        conn = ScriptedSMTP.instances[0]
        assert (conn.host, conn.port, conn.timeout) == ("smtp.example.org", 587, 30)
        assert conn.calls == ["ehlo", "starttls", "ehlo", "login", "noop"]
        assert conn.closed is True

    def test_no_starttls_when_server_lacks_it(self, smtp_settings, scripted_smtp):
        scripted_smtp["extensions"] = ()
        Notifier(smtp_settings, executor=ImmediateExecutor()).verify()

        assert ScriptedSMTP.instances[0].calls == ["ehlo", "login", "noop"]

    def test_secure_uses_implicit_tls(self, smtp_settings, scripted_smtp, monkeypatch):
        plain = []
        monkeypatch.setattr(smtplib, "SMTP", lambda *a, **kw: plain.append(a))
        settings = dataclasses.replace(smtp_settings, smtp_secure=True, smtp_port=465)

        outcome = Notifier(settings, executor=ImmediateExecutor()).verify()

        assert outcome.ok is True
        assert plain == []
        conn = ScriptedSMTP.instances[0]
        assert conn.port == 465
        assert conn.calls == ["login", "noop"]

    def test_verify_skipped_when_unconfigured(self, scripted_smtp):
        outcome = Notifier(Settings(), executor=ImmediateExecutor()).verify()

        assert outcome.skipped is True
        assert ScriptedSMTP.instances == []

    def test_login_failure_closes_connection_on_verify(self, smtp_settings, scripted_smtp, caplog):
        scripted_smtp["fail_on"] = "login"

        with caplog.at_level(logging.ERROR):
            outcome = Notifier(smtp_settings, executor=ImmediateExecutor()).verify()

        assert outcome.ok is False
        assert ScriptedSMTP.instances[0].closed is True
        assert "SMTP verify failed" in caplog.text

    def test_login_failure_closes_connection_on_send(self, smtp_settings, scripted_smtp, caplog):
        scripted_smtp["fail_on"] = "login"

        with caplog.at_level(logging.ERROR):
            Notifier(smtp_settings, executor=ImmediateExecutor()).send("Plot Created", "<p>ok</p>")

        conn = ScriptedSMTP.instances[0]
        assert "send_message" not in conn.calls
        assert conn.closed is True
        assert "Email send failed" in caplog.text

    def test_starttls_failure_closes_connection(self, smtp_settings, scripted_smtp):
        scripted_smtp["fail_on"] = "starttls"

        outcome = Notifier(smtp_settings, executor=ImmediateExecutor()).verify()

        assert outcome.ok is False
        assert ScriptedSMTP.instances[0].closed is True
