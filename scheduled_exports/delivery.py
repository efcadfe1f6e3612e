"""
Scheduled Exports - Delivery Channels.

============================================================
PURPOSE
============================================================
Hands finished export artifacts to their destination and sends
success/failure notices.

Channels:
- download: no-op, the artifact is already available
- email:    SMTP with the artifact attached
- webhook:  JSON POST describing the artifact
- storage:  artifact written into a directory

============================================================
FAILURE POLICY
============================================================
Channels raise DeliveryError. The router and notifier catch
every failure, log it, and report False. A delivery failure
never changes a job's status or retry budget.

============================================================
"""

from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import smtplib

import aiohttp

from core.clock import ClockFactory, ClockProtocol, to_iso8601
from core.config import BatchOpsConfig
from core.exceptions import DeliveryError

from import_export.models import ExportArtifact, ExportResult

from .models import DeliveryConfig, DeliveryMethod, ScheduledExportConfig, ScheduledExportJob


logger = logging.getLogger(__name__)


# ============================================================
# EMAIL
# ============================================================

class EmailSender:
    """SMTP sender; the blocking smtplib call runs in a worker thread."""

    def __init__(
        self,
        smtp_host: Optional[str],
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: str = "exports@localhost",
        timeout: float = 30.0,
    ):
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender = sender
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self._smtp_host)

    def build_message(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        attachment: Optional[ExportArtifact] = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(body)

        if attachment is not None:
            maintype, _, subtype = attachment.content_type.split(";")[0].partition("/")
            message.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                filename=attachment.file_name,
            )
        return message

    async def send(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        attachment: Optional[ExportArtifact] = None,
    ) -> None:
        if not self.is_configured:
            raise DeliveryError("SMTP host is not configured", method="email")
        if not recipients:
            raise DeliveryError("No email recipients", method="email")

        message = self.build_message(recipients, subject, body, attachment)
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(
                f"Email delivery failed: {e}",
                method="email",
                target=", ".join(recipients),
                cause=e,
            )
        logger.info(f"Email '{subject}' sent to {len(recipients)} recipient(s)")

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=self._timeout) as server:
            if self._use_tls:
                server.starttls()
            if self._username and self._password:
                server.login(self._username, self._password)
            server.send_message(message)


# ============================================================
# WEBHOOK
# ============================================================

class WebhookSender:
    """JSON POST over a shared aiohttp session."""

    def __init__(self, timeout_seconds: float = 30.0, session: Optional[aiohttp.ClientSession] = None):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            session = await self._get_session()
            async with session.post(url, json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise DeliveryError(
                        f"Webhook returned {response.status}: {body[:200]}",
                        method="webhook",
                        target=url,
                    )
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Webhook request failed: {e}", method="webhook", target=url, cause=e)
        except asyncio.TimeoutError as e:
            raise DeliveryError("Webhook request timed out", method="webhook", target=url, cause=e)


# ============================================================
# STORAGE
# ============================================================

class StorageWriter:
    """Writes artifacts into a local (or mounted) directory."""

    async def write(self, location: str, artifact: ExportArtifact) -> Path:
        directory = Path(location)
        path = directory / artifact.file_name
        try:
            await asyncio.to_thread(self._write_sync, directory, path, artifact.content)
        except OSError as e:
            raise DeliveryError(
                f"Storage write failed: {e}",
                method="storage",
                target=str(path),
                cause=e,
            )
        logger.info(f"Stored {artifact.file_name} ({artifact.size_bytes} bytes) in {directory}")
        return path

    @staticmethod
    def _write_sync(directory: Path, path: Path, content: bytes) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


# ============================================================
# ROUTER
# ============================================================

class DeliveryRouter:
    """Dispatches a finished export to the channel its config names."""

    def __init__(
        self,
        email: Optional[EmailSender] = None,
        webhook: Optional[WebhookSender] = None,
        storage: Optional[StorageWriter] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._email = email or EmailSender(smtp_host=None)
        self._webhook = webhook or WebhookSender()
        self._storage = storage or StorageWriter()
        self._clock = clock or ClockFactory.get_clock()

    @property
    def email(self) -> EmailSender:
        return self._email

    @property
    def webhook(self) -> WebhookSender:
        return self._webhook

    async def deliver(self, delivery: DeliveryConfig, result: ExportResult, name: str = "") -> bool:
        """
        Deliver one successful export.

        Returns True when delivered (or nothing to do); failures
        are logged and reported as False, never raised.
        """
        artifact = result.artifact
        if artifact is None:
            logger.warning(f"Export {result.operation_id} has no artifact to deliver")
            return False

        try:
            if delivery.method == DeliveryMethod.EMAIL:
                if not delivery.recipients:
                    logger.warning(f"Email delivery for '{name}' has no recipients, skipping")
                    return True
                await self._email.send(
                    delivery.recipients,
                    subject=f"Scheduled export: {name or artifact.file_name}",
                    body=(
                        f"The scheduled export '{name}' finished with "
                        f"{artifact.record_count} records.\n"
                        f"File: {artifact.file_name}\n"
                    ),
                    attachment=artifact,
                )

            elif delivery.method == DeliveryMethod.WEBHOOK:
                if not delivery.webhook_url:
                    logger.warning(f"Webhook delivery for '{name}' has no URL, skipping")
                    return True
                await self._webhook.post(delivery.webhook_url, self.completion_payload(result))

            elif delivery.method == DeliveryMethod.STORAGE:
                if not delivery.storage_location:
                    logger.warning(f"Storage delivery for '{name}' has no location, skipping")
                    return True
                await self._storage.write(delivery.storage_location, artifact)

            return True

        except DeliveryError as e:
            logger.error(e.to_log_format())
            return False
        except Exception as e:
            logger.error(f"Unexpected {delivery.method.value} delivery failure: {e}", exc_info=True)
            return False

    def completion_payload(self, result: ExportResult) -> Dict[str, Any]:
        artifact = result.artifact
        return {
            "type": "export_completed",
            "filename": artifact.file_name if artifact else None,
            "downloadUrl": artifact.download_url if artifact else None,
            "summary": result.summary.to_dict() if result.summary else None,
            "timestamp": to_iso8601(self._clock.now()),
        }

    async def close(self) -> None:
        await self._webhook.close()


# ============================================================
# NOTIFIER
# ============================================================

class ExportNotifier:
    """Success/failure notices for scheduled jobs."""

    def __init__(
        self,
        email: Optional[EmailSender] = None,
        webhook: Optional[WebhookSender] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._email = email
        self._webhook = webhook
        self._clock = clock or ClockFactory.get_clock()

    @staticmethod
    def message_for(config: ScheduledExportConfig, job: ScheduledExportJob, success: bool) -> str:
        if success:
            return f'Export "{config.name}" completed successfully'
        error = job.result.error if job.result else "unknown error"
        return f'Export "{config.name}" failed: {error}'

    async def notify(
        self,
        config: ScheduledExportConfig,
        job: ScheduledExportJob,
        success: bool,
    ) -> bool:
        """Send a notice if the config asks for one; returns whether one was sent."""
        delivery = config.delivery
        wanted = delivery.notify_on_success if success else delivery.notify_on_failure
        if not wanted:
            return False

        message = self.message_for(config, job, success)
        logger.info(f"Notification: {message}")

        try:
            if delivery.recipients and self._email is not None and self._email.is_configured:
                await self._email.send(delivery.recipients, subject=message, body=message)
                return True
            if delivery.webhook_url and self._webhook is not None:
                await self._webhook.post(delivery.webhook_url, {
                    "type": "export_succeeded" if success else "export_failed",
                    "config_id": config.config_id,
                    "name": config.name,
                    "job_id": job.job_id,
                    "message": message,
                    "error": None if success or job.result is None else job.result.error,
                    "timestamp": to_iso8601(self._clock.now()),
                })
                return True
        except DeliveryError as e:
            logger.error(e.to_log_format())
        except Exception as e:
            logger.error(f"Notification for job {job.job_id} failed: {e}", exc_info=True)
        return False


def create_delivery(
    config: Optional[BatchOpsConfig] = None,
    clock: Optional[ClockProtocol] = None,
) -> Tuple[DeliveryRouter, ExportNotifier]:
    """Build a DeliveryRouter and ExportNotifier sharing one email/webhook pair."""
    config = config or BatchOpsConfig()
    email = EmailSender(
        smtp_host=config.smtp_host,
        smtp_port=config.smtp_port,
        username=config.smtp_user,
        password=config.smtp_password,
        use_tls=config.smtp_use_tls,
        sender=config.email_from,
    )
    webhook = WebhookSender(timeout_seconds=config.webhook_timeout_seconds)
    router = DeliveryRouter(email=email, webhook=webhook, storage=StorageWriter(), clock=clock)
    notifier = ExportNotifier(email=email, webhook=webhook, clock=clock)
    return router, notifier
