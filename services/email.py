import os
import smtplib
from email.message import EmailMessage
from typing import Dict, Any

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import settings
from tasks.email_tasks import send_email_task

logger = structlog.get_logger()

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)

STATUS_SUBJECTS = {
    "shipped": "Your order has been shipped",
    "delivered": "Your order has been delivered",
}


def send_email(to_email: str, subject: str, body: str) -> None:
    """
    Queue the email on Celery, falling back to sending it inline when the
    broker is unreachable. Returns immediately when the task is queued.
    """
    try:
        send_email_task.delay(to_email, subject, body)
        logger.info("email_queued", to=to_email, subject=subject)
        return
    except Exception as exc:
        logger.warning("email_queue_unavailable", to=to_email, error=str(exc))

    _send_email_direct(to_email, subject, body)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def send_templated_email(to_email: str, subject: str, template_path: str, context: Dict[str, Any]) -> None:
    """Render a template and send email via existing send_email path."""
    body = render_template(template_path, context)
    send_email(to_email, subject, body)


def send_order_confirmation(to_email: str, order_snapshot: Dict[str, Any]) -> None:
    send_templated_email(
        to_email,
        f"Order confirmation #{order_snapshot['id']}",
        "emails/order_confirmation.txt",
        {"order": order_snapshot},
    )


def send_order_status_update(to_email: str, order_snapshot: Dict[str, Any]) -> None:
    status = order_snapshot["status"]
    send_templated_email(
        to_email,
        STATUS_SUBJECTS.get(status, f"Order #{order_snapshot['id']} update"),
        "emails/order_status_update.txt",
        {"order": order_snapshot},
    )


def _send_email_direct(to_email: str, subject: str, body: str) -> None:
    """Direct email sending fallback"""
    if not settings.SMTP_PASSWORD:
        logger.info("email_skipped_no_smtp_credentials", to=to_email, subject=subject)
        return

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
    msg["To"] = to_email
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
        server.starttls()
        if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.send_message(msg)

    logger.info("email_sent", to=to_email, subject=subject)
