import smtplib
from email.message import EmailMessage

import structlog
from core.celery import celery_app

from core.config import settings

logger = structlog.get_logger()


@celery_app.task(bind=True, max_retries=3)
def send_email_task(self, to_email: str, subject: str, body: str):
    """
    Send email asynchronously with Celery.
    Retries up to 3 times on failure.
    """
    if settings.TESTING or not settings.SMTP_PASSWORD:
        logger.info("email_skipped", to=to_email, subject=subject)
        return {"status": "skipped", "to": to_email}

    try:
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

        return {"status": "sent", "to": to_email, "subject": subject}

    except Exception as exc:
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        logger.warning("email_send_failed", to=to_email, error=str(exc), retry_in=countdown)
        raise self.retry(exc=exc, countdown=countdown)
