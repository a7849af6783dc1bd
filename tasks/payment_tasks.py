import structlog
from core.celery import celery_app

from core.db import db_session
from core.errors import NotFoundError, UpstreamGatewayError
from services.payments import refresh_payment_status
from services.pesapal import get_payment_gateway

logger = structlog.get_logger()


@celery_app.task(bind=True, max_retries=5)
def refresh_payment_status_task(self, tracking_id: str):
    """
    Re-query the gateway for a transaction whose notification could not be
    processed inline. Reconciliation is idempotent, so retries are safe.
    """
    try:
        with db_session() as db:
            result = refresh_payment_status(db, get_payment_gateway(), tracking_id)
    except NotFoundError:
        return {"status": "unknown", "tracking_id": tracking_id}
    except UpstreamGatewayError as exc:
        countdown = min(2 ** self.request.retries * 5, 300)
        logger.warning("payment_refresh_retry", tracking_id=tracking_id, retry_in=countdown)
        raise self.retry(exc=exc, countdown=countdown)

    return {
        "status": "reconciled",
        "tracking_id": tracking_id,
        "payment_status": result.payment_status,
        "applied": result.applied,
    }
