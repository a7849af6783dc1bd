"""Pesapal API v3 client.

Every call carries ``settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS``; transport
failures, non-2xx responses and error bodies all surface as
``UpstreamGatewayError``.
"""
from dataclasses import dataclass
from typing import Any, Dict

import requests
import structlog

from core.config import settings
from core.errors import UpstreamGatewayError

logger = structlog.get_logger()


@dataclass(frozen=True)
class GatewayTransaction:
    tracking_id: str
    redirect_url: str
    merchant_reference: str
    raw: Dict[str, Any]


@dataclass(frozen=True)
class GatewayStatus:
    tracking_id: str
    status: str
    raw: Dict[str, Any]


class PesapalClient:
    provider = "pesapal"

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 20,
        ipn_id: str | None = None,
        http: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout
        self.ipn_id = ipn_id or None
        self.http = http or requests.Session()

    def _headers(self, token: str | None = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(self, method: str, path: str, token: str | None = None, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(method, url, headers=self._headers(token), timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as exc:
            logger.warning("gateway_timeout", path=path)
            raise UpstreamGatewayError("Payment provider timed out, please retry") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.warning("gateway_request_failed", path=path, error=str(exc))
            raise UpstreamGatewayError("Payment provider request failed, please retry") from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning("gateway_error_response", path=path, error=error)
            raise UpstreamGatewayError(f"Payment provider error: {message or 'unknown error'}")
        return data

    def request_token(self) -> str:
        data = self._request(
            "POST",
            "/api/Auth/RequestToken",
            json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
        )
        token = data.get("token")
        if not token:
            raise UpstreamGatewayError("Payment provider returned no access token")
        return token

    def register_ipn(self, token: str, url: str) -> str:
        data = self._request(
            "POST",
            "/api/URLSetup/RegisterIPN",
            token=token,
            json={"url": url, "ipn_notification_type": "POST"},
        )
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise UpstreamGatewayError("Payment provider did not register the notification URL")
        return ipn_id

    def create_transaction(
        self,
        *,
        merchant_reference: str,
        amount,
        currency: str,
        description: str,
        callback_url: str,
        billing_address: Dict[str, Any],
    ) -> GatewayTransaction:
        token = self.request_token()
        notification_id = self.ipn_id or self.register_ipn(token, settings.PESAPAL_IPN_URL)
        payload = {
            "id": merchant_reference,
            "currency": currency,
            "amount": float(amount),
            "description": description[:100],
            "callback_url": callback_url,
            "notification_id": notification_id,
            "billing_address": billing_address,
        }
        data = self._request("POST", "/api/Transactions/SubmitOrderRequest", token=token, json=payload)
        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            raise UpstreamGatewayError("Payment provider response is missing the tracking id")
        return GatewayTransaction(
            tracking_id=tracking_id,
            redirect_url=redirect_url,
            merchant_reference=data.get("merchant_reference") or merchant_reference,
            raw=data,
        )

    def query_status(self, tracking_id: str) -> GatewayStatus:
        token = self.request_token()
        data = self._request(
            "GET",
            "/api/Transactions/GetTransactionStatus",
            token=token,
            params={"orderTrackingId": tracking_id},
        )
        return GatewayStatus(
            tracking_id=tracking_id,
            status=data.get("payment_status_description") or "",
            raw=data,
        )


def get_payment_gateway() -> PesapalClient:
    """FastAPI dependency; tests override it with a fake gateway."""
    return PesapalClient(
        base_url=settings.PESAPAL_API_URL,
        consumer_key=settings.PESAPAL_CONSUMER_KEY,
        consumer_secret=settings.PESAPAL_CONSUMER_SECRET,
        timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        ipn_id=settings.PESAPAL_IPN_ID,
    )
