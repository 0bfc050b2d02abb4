"""
Notification delivery service.
Provides concrete alert/webhook/email/SMS transports for workflow notifications.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from storage.service import StorageService

logger = logging.getLogger(__name__)

CHANNELS = ("alert", "webhook", "email", "sms")


class DeliveryError(RuntimeError):
    """Transport-level delivery failure."""
    pass


@dataclass
class NotificationPayload:
    """Message handed to a delivery channel."""
    message: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    workflow_id: Optional[int] = None


@dataclass
class DeliveryResult:
    delivered: bool
    error: Optional[str] = None
    detail: Optional[str] = None


class NotificationDeliveryService:
    """Dispatches workflow notifications over configured delivery channels."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory

    def send(self, channel: str, payload: NotificationPayload) -> DeliveryResult:
        """
        Send a notification using the selected channel.

        Transport failures are reported in the result, never raised.
        """
        if not self.settings.notifications_enabled:
            return DeliveryResult(delivered=False, error="Notification transport is disabled by configuration")

        try:
            if channel == "alert":
                detail = self._send_alert(payload)
            elif channel == "webhook":
                detail = self._send_webhook(payload)
            elif channel == "email":
                detail = self._send_email(
                    recipient=payload.recipient or "",
                    subject=payload.subject or "Workflow notification",
                    body=payload.message,
                )
            elif channel == "sms":
                detail = self._send_sms_twilio(recipient=payload.recipient or "", body=payload.message)
            else:
                return DeliveryResult(delivered=False, error=f"Unsupported notification channel: {channel}")
        except DeliveryError as exc:
            logger.warning("Notification delivery over %s failed: %s", channel, exc)
            return DeliveryResult(delivered=False, error=str(exc))

        logger.info("Notification delivered over %s: %s", channel, detail)
        return DeliveryResult(delivered=True, detail=detail)

    def _send_alert(self, payload: NotificationPayload) -> str:
        """In-app alert: logged and written to the audit trail."""
        logger.warning("ALERT%s: %s", f" [workflow {payload.workflow_id}]" if payload.workflow_id else "", payload.message)
        if self.session_factory is None:
            return "Alert logged"
        db = self.session_factory()
        try:
            StorageService(db).create_audit_log(
                event_type="notification_sent",
                description=payload.message[:500],
                details={"channel": "alert", "subject": payload.subject},
                workflow_id=payload.workflow_id,
            )
        except Exception as exc:
            raise DeliveryError(f"Alert could not be recorded: {exc}") from exc
        finally:
            db.close()
        return "Alert recorded"

    def _send_webhook(self, payload: NotificationPayload) -> str:
        """POST/PUT the message as JSON to the webhook URL."""
        url = (payload.recipient or "").strip()
        if not (url.startswith("http://") or url.startswith("https://")):
            raise DeliveryError(f"Invalid webhook URL: {url!r}")

        body = dict(payload.data)
        body.setdefault("message", payload.message)
        if payload.subject:
            body.setdefault("subject", payload.subject)
        if payload.workflow_id is not None:
            body.setdefault("workflow_id", payload.workflow_id)

        timeout = max(1, int(self.settings.webhook_timeout_seconds))
        try:
            response = httpx.request(
                payload.method.upper() or "POST", url, json=body, headers=payload.headers, timeout=timeout
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Webhook request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryError(f"Webhook delivery failed ({response.status_code}): {_truncate(response.text)}")
        return f"Webhook delivered to {url}"

    def _send_email(self, recipient: str, subject: str, body: str) -> str:
        """Send via SMTP."""
        smtp_host = (self.settings.smtp_host or "").strip()
        smtp_username = (self.settings.smtp_username or "").strip()
        smtp_password = (self.settings.smtp_password or "").strip()
        from_email = (self.settings.smtp_from_email or "").strip()

        if not recipient.strip():
            raise DeliveryError("Email recipient is missing")
        if not smtp_host:
            raise DeliveryError("SMTP host is not configured (TRADEFLOW_SMTP_HOST)")
        if not from_email:
            raise DeliveryError("SMTP from address is not configured (TRADEFLOW_SMTP_FROM_EMAIL)")
        if not smtp_username or not smtp_password:
            raise DeliveryError("SMTP credentials are not configured (TRADEFLOW_SMTP_USERNAME/PASSWORD)")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = from_email
        message["To"] = recipient
        message.set_content(body)

        timeout = max(1, int(self.settings.smtp_timeout_seconds))
        port = int(self.settings.smtp_port)
        use_ssl = bool(self.settings.smtp_use_ssl)
        use_tls = bool(self.settings.smtp_use_tls)

        smtp_client: Optional[smtplib.SMTP] = None
        try:
            if use_ssl:
                smtp_client = smtplib.SMTP_SSL(smtp_host, port, timeout=timeout)
            else:
                smtp_client = smtplib.SMTP(smtp_host, port, timeout=timeout)
            smtp_client.ehlo()
            if (not use_ssl) and use_tls:
                smtp_client.starttls()
                smtp_client.ehlo()
            smtp_client.login(smtp_username, smtp_password)
            smtp_client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery failed: {exc}") from exc
        finally:
            if smtp_client is not None:
                try:
                    smtp_client.quit()
                except (smtplib.SMTPException, OSError):
                    pass
        return f"Email sent to {recipient}"

    def _send_sms_twilio(self, recipient: str, body: str) -> str:
        """Send via Twilio REST API."""
        sid = (self.settings.twilio_account_sid or "").strip()
        token = (self.settings.twilio_auth_token or "").strip()
        from_number = (self.settings.twilio_from_number or "").strip()

        if not recipient.strip():
            raise DeliveryError("SMS recipient is missing")
        if not sid:
            raise DeliveryError("Twilio account SID is not configured (TRADEFLOW_TWILIO_ACCOUNT_SID)")
        if not token:
            raise DeliveryError("Twilio auth token is not configured (TRADEFLOW_TWILIO_AUTH_TOKEN)")
        if not from_number:
            raise DeliveryError("Twilio from number is not configured (TRADEFLOW_TWILIO_FROM_NUMBER)")

        timeout = max(1, int(self.settings.twilio_timeout_seconds))
        url = f"https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
        payload = {"To": recipient, "From": from_number, "Body": body}
        try:
            response = httpx.post(url, data=payload, auth=(sid, token), timeout=timeout)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Twilio request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryError(f"Twilio delivery failed ({response.status_code}): {_truncate(response.text)}")
        return f"SMS sent to {recipient}"


def _truncate(text: str, limit: int = 280) -> str:
    detail = (text or "").strip()
    return detail[:limit] if len(detail) > limit else detail
