"""Centralized transactional email delivery with retry logic."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import List, Optional, Sequence, Tuple

from flask import current_app, render_template
from flask_mail import Mail, Message

from services.delivery import DeliveryResult
from services.report_service import success_rate_color

mail = Mail()
logger = logging.getLogger(__name__)


@dataclass
class EmailPayload:
    to_emails: Sequence[str]
    subject: str
    template_name: str
    context: dict
    # (filename, content_type, data)
    attachments: List[Tuple[str, str, bytes]] = field(default_factory=list)


def init_mail(app):
    mail.init_app(app)


def is_valid_recipient(email: str) -> bool:
    _, parsed = parseaddr(email or "")
    return bool(parsed and "@" in parsed)


def send_templated_email(payload: EmailPayload, *, retries: Optional[int] = None, backoff_s: float = 1.5) -> DeliveryResult:
    recipients = [addr for addr in payload.to_emails if is_valid_recipient(addr)]
    if not recipients:
        logger.warning("Skipping email; no valid recipients in %s", list(payload.to_emails))
        return DeliveryResult(success=False, error="No valid recipients")

    if not current_app.config.get("MAIL_ENABLED"):
        logger.warning("Mail disabled; not sending subject=%s to=%s", payload.subject, recipients)
        return DeliveryResult(success=False, error="Email service not configured")

    if retries is None:
        retries = current_app.config.get("MAIL_MAX_RETRIES", 3)

    html_body = render_template(f"emails/{payload.template_name}.html", **payload.context)
    text_body = render_template(f"emails/{payload.template_name}.txt", **payload.context)

    msg = Message(
        subject=payload.subject,
        recipients=recipients,
        html=html_body,
        body=text_body,
    )
    for filename, content_type, data in payload.attachments:
        msg.attach(filename, content_type, data)

    last_error = None
    for attempt in range(1, max(1, retries) + 1):
        try:
            mail.send(msg)
            logger.info("Email sent: subject=%s to=%s", payload.subject, recipients)
            return DeliveryResult(success=True, external_id=getattr(msg, "msgId", None))
        except Exception as exc:  # noqa: BLE001
            last_error = str(exc)
            logger.exception("Email send failed on attempt %s: %s", attempt, exc)
            if attempt < retries:
                time.sleep(backoff_s * attempt)

    return DeliveryResult(success=False, error=last_error or "Failed to send email")


def send_communication_email(to_email: str, subject: str, body_html: str) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=subject,
            template_name="communication",
            context={"body_html": body_html},
        )
    )


def send_sla_alert_email(admin_emails: Sequence[str], alert: dict) -> DeliveryResult:
    severity_label = "CRITICAL" if alert["severity"] == "critical" else "WARNING"
    return send_templated_email(
        EmailPayload(
            to_emails=admin_emails,
            subject=f"{severity_label} - {alert['channel'].upper()} Response Time Exceeded SLA",
            template_name="sla_alert",
            context={"alert": alert, "severity_label": severity_label},
        )
    )


def send_referral_notification_email(admin_email: str, referral: dict) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[admin_email],
            subject=f"New Referral Added by {referral.get('broker_firm') or referral['broker_name']}",
            template_name="referral_notification",
            context={"referral": referral},
        )
    )


def send_referral_success_email(recipients: Sequence[str], referral: dict) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=recipients,
            subject=f"Success! Referral for {referral['referral_name']} is COMPLETED",
            template_name="referral_success",
            context={"referral": referral},
        )
    )


def send_referral_welcome_email(to_email: str, referral: dict, service_label: str, service_description: str) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=f"Excited to help! Connecting you with your {service_label}",
            template_name="referral_welcome",
            context={
                "referral": referral,
                "service_label": service_label,
                "service_description": service_description,
            },
        )
    )


def send_message_notification_email(to_email: str, recipient_name: str, lead_name: str, sender_label: str, message: str) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=f"New Message from {sender_label} - Lead: {lead_name}",
            template_name="message_notification",
            context={
                "recipient_name": recipient_name or "there",
                "lead_name": lead_name,
                "sender_label": sender_label,
                "message": message,
            },
        )
    )


def send_document_notification_email(to_email: str, recipient_name: str, document_name: str, document_category: str) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=f"New Document Shared: {document_name}",
            template_name="document_notification",
            context={
                "recipient_name": recipient_name or "there",
                "document_name": document_name,
                "document_category": document_category,
            },
        )
    )


def send_ai_call_notification_email(admin_emails: Sequence[str], call: dict) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=admin_emails,
            subject=f"AI Call Update: {call['recipient_name']} - Action Required",
            template_name="ai_call_notification",
            context={"call": call},
        )
    )


def send_appointment_reminder_email(to_email: str, broker_name: str, appointments: list, hours_ahead: int) -> DeliveryResult:
    count = len(appointments)
    plural = "s" if count > 1 else ""
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=f"Reminder: {count} Upcoming Appointment{plural} - Lead Velocity",
            template_name="appointment_reminders",
            context={
                "broker_name": broker_name,
                "appointments": appointments,
                "hours_ahead": hours_ahead,
            },
        )
    )


def send_appointment_update_email(to_email: str, broker_name: str, lead_name: str, new_date: str) -> DeliveryResult:
    return send_templated_email(
        EmailPayload(
            to_emails=[to_email],
            subject=f"Appointment updated: {lead_name}",
            template_name="appointment_update",
            context={"broker_name": broker_name or "there", "lead_name": lead_name, "new_date": new_date},
        )
    )


def send_scheduled_report_email(recipients: Sequence[str], report: dict, analytics: dict, date_range: str, pdf_bytes: Optional[bytes]) -> DeliveryResult:
    attachments = []
    if pdf_bytes:
        attachments.append((f"{report['name']}.pdf", "application/pdf", pdf_bytes))
    return send_templated_email(
        EmailPayload(
            to_emails=recipients,
            subject=f"{report['name']} - {date_range}",
            template_name="scheduled_report",
            context={
                "report": report,
                "analytics": analytics,
                "date_range": date_range,
                "rate_color": success_rate_color(analytics.get("summary", {}).get("success_rate", 0)),
            },
            attachments=attachments,
        )
    )
