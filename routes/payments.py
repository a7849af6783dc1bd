from dataclasses import asdict
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.errors import NotFoundError, UpstreamGatewayError
from models.user import User
from schemas.payment import IPNPayload, PaymentInitRequest, PaymentInitResponse, PaymentStatusOut
from security.dependencies import get_current_user
from services import orders as order_service
from services import payments as payment_service
from services.pesapal import get_payment_gateway
from tasks.payment_tasks import refresh_payment_status_task

logger = structlog.get_logger()

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/initiate", response_model=PaymentInitResponse)
def initiate_payment(
    data: PaymentInitRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    order = order_service.get_order_for_user(db, data.order_id, current_user)
    return asdict(payment_service.initiate_payment(db, order, gateway))


def _handle_ipn(payload: IPNPayload, db: Session, gateway) -> dict:
    response = {
        "orderNotificationType": payload.OrderNotificationType or "IPNCHANGE",
        "orderTrackingId": payload.OrderTrackingId,
        "orderMerchantReference": payload.OrderMerchantReference,
        "status": 200,
    }
    if not payload.OrderTrackingId:
        logger.warning("ipn_missing_tracking_id", merchant_reference=payload.OrderMerchantReference)
        response["status"] = 500
        return response

    try:
        result = payment_service.refresh_payment_status(db, gateway, payload.OrderTrackingId)
    except NotFoundError:
        # Unknown or stale transaction, acknowledged so the gateway stops resending
        return response
    except UpstreamGatewayError as exc:
        logger.warning("ipn_status_query_failed", tracking_id=payload.OrderTrackingId, error=exc.message)
        try:
            refresh_payment_status_task.delay(payload.OrderTrackingId)
        except Exception:
            logger.exception("payment_refresh_enqueue_failed", tracking_id=payload.OrderTrackingId)
        response["status"] = 500
        return response

    logger.info(
        "ipn_processed",
        tracking_id=result.tracking_id,
        order_id=result.order_id,
        payment_status=result.payment_status,
        applied=result.applied,
    )
    return response


@router.post("/ipn")
def payment_notification(
    payload: Optional[IPNPayload] = None,
    query: IPNPayload = Depends(),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    # The gateway may send the fields in the body or on the query string
    return _handle_ipn(payload or query, db, gateway)


@router.get("/ipn")
def payment_notification_get(
    payload: IPNPayload = Depends(), db: Session = Depends(get_db), gateway=Depends(get_payment_gateway)
):
    return _handle_ipn(payload, db, gateway)


@router.get("/status/{tracking_id}", response_model=PaymentStatusOut)
def payment_status(
    tracking_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    payment = payment_service.find_payment(db, tracking_id)
    order_service.get_order_for_user(db, payment.order_id, current_user)
    return asdict(payment_service.refresh_payment_status(db, gateway, tracking_id))
