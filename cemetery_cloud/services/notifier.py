"""
Email notifier.

Mutation summaries go to a fixed distribution list over SMTP. Sending is
fire-and-forget: the message is handed to a background executor and the
request never waits on it. Delivery errors are logged by the executor's
done callback and go nowhere else.
"""
import html
import logging
import smtplib
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import contextmanager
from email.message import EmailMessage
from typing import Any, Iterator, Optional

from cemetery_cloud.config import Settings
from cemetery_cloud.services.outcome import Outcome

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 30


def escape(value: Any) -> str:
    """Escape & < > " ' so untrusted text cannot inject markup. None becomes ''."""
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


class Notifier:
    def __init__(self, settings: Settings, executor: Optional[Executor] = None):
        self.settings = settings
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="notifier"
        )

    @property
    def enabled(self) -> bool:
        return self.settings.email_enabled

    def send(self, subject: str, body_html: str) -> Outcome:
        """Queue a message for delivery. Returns immediately; never raises."""
        if not self.enabled:
            return Outcome.skip("email disabled or not configured")
        try:
            message = self._build_message(subject, body_html)
        except (ValueError, TypeError) as exc:
            logger.error("Email not built: %s", exc)
            return Outcome.failure(str(exc))
        try:
            future = self._executor.submit(self._deliver, message)
        except RuntimeError as exc:
            # Executor already shut down (application stopping)
            logger.error("Email not queued: %s", exc)
            return Outcome.failure(str(exc))
        future.add_done_callback(self._log_delivery)
        return Outcome.success()

    def verify(self) -> Outcome:
        """Open an SMTP session and issue NOOP. Used once at startup."""
        if not self.enabled:
            return Outcome.skip("email disabled or not configured")
        try:
            with self._connect() as smtp:
                smtp.noop()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP verify failed: %s", exc)
            return Outcome.failure(str(exc))
        logger.info("SMTP ready")
        return Outcome.success()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    def _build_message(self, subject: str, body_html: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.settings.mail_from
        message["To"] = ", ".join(self.settings.notify_to)
        message.set_content("This notification requires an HTML-capable mail client.")
        message.add_alternative(body_html, subtype="html")
        return message

    @contextmanager
    def _connect(self) -> Iterator[smtplib.SMTP]:
        """Authenticated SMTP session, closed on exit even when the handshake fails."""
        s = self.settings
        if s.smtp_secure:
            smtp = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            smtp = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        with smtp:
            if not s.smtp_secure:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
            smtp.login(s.smtp_user, s.smtp_pass)
            yield smtp

    def _deliver(self, message: EmailMessage) -> None:
        with self._connect() as smtp:
            smtp.send_message(message)

    @staticmethod
    def _log_delivery(future: Future) -> None:
        if future.cancelled():
            logger.warning("Email send cancelled")
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Email send failed: %s", exc)
