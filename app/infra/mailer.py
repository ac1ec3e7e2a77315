from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

import structlog
from sqlmodel import Session

from app.domain.models import OutboundEmail, OutboundEmailStatus, now_utc
from app.infra.config import get_settings
from app.infra.db import get_engine

logger = structlog.get_logger(__name__)

INVITATION_TEMPLATE = "tenant_admin_invitation"


@dataclass
class EmailSendResult:
    email_id: str
    delivered: bool
    error: str | None = None


class InvitationMailer:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _deliver(self, recipient: str, subject: str, body: str) -> None:
        settings = get_settings()
        if not settings.smtp_host:
            logger.info("mailer.smtp_not_configured", recipient=recipient, subject=subject)
            return
        message = EmailMessage()
        message["From"] = settings.smtp_sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(host=settings.smtp_host, port=settings.smtp_port, timeout=8) as smtp:
            smtp.send_message(message)

    def send_invitation(
        self,
        *,
        tenant_id: str,
        tenant_name: str,
        recipient: str,
        first_name: str,
        invitation_token: str,
    ) -> EmailSendResult:
        settings = get_settings()
        link = f"{settings.app_base_url}/invitations/{invitation_token}"
        subject = f"You have been invited to administer {tenant_name}"
        body = (
            f"Hi {first_name},\n\n"
            f"An administrator account has been created for you on {tenant_name}.\n"
            f"Accept the invitation within {settings.invitation_expiry_days} days: {link}\n"
        )
        payload: dict[str, Any] = {"tenant_name": tenant_name, "link": link}
        with self._session() as session:
            row = OutboundEmail(
                tenant_id=tenant_id,
                recipient=recipient,
                template=INVITATION_TEMPLATE,
                subject=subject,
                payload=payload,
            )
            session.add(row)
            session.commit()

            try:
                self._deliver(recipient, subject, body)
            except (OSError, smtplib.SMTPException) as exc:
                row.status = OutboundEmailStatus.FAILED
                row.error = str(exc)
                session.add(row)
                session.commit()
                logger.warning("mailer.delivery_failed", recipient=recipient, error=str(exc))
                return EmailSendResult(email_id=row.id, delivered=False, error=str(exc))

            row.status = OutboundEmailStatus.SENT
            row.sent_at = now_utc()
            session.add(row)
            session.commit()
            return EmailSendResult(email_id=row.id, delivered=True)
