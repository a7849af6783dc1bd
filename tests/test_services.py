from contextlib import contextmanager
from unittest.mock import Mock, patch

import pytest
import requests
from celery.exceptions import Retry

from core.errors import NotFoundError, UpstreamGatewayError
from services.email import (
    _send_email_direct,
    render_template,
    send_email,
    send_order_confirmation,
    send_order_status_update,
    send_templated_email,
)
from services.payments import ReconcileResult
from services.pesapal import PesapalClient
from tasks.email_tasks import send_email_task
from tasks.payment_tasks import refresh_payment_status_task


def _snapshot(**overrides):
    snapshot = {
        "id": 42,
        "status": "pending",
        "payment_status": "pending",
        "payment_method": "pesapal",
        "currency": "KES",
        "created_at": "2024-05-01 10:00",
        "items": [{"name": "Phone", "quantity": 1, "unit_price": "1,000.00", "total": "1,000.00"}],
        "subtotal": "1,000.00",
        "discount_code": "SAVE10",
        "discount_amount": "100.00",
        "tax_amount": "144.00",
        "shipping_cost": "50.00",
        "total": "1,094.00",
        "delivery_point": {"name": "CBD Pickup", "location": "Moi Avenue", "operating_hours": "8-6"},
        "shipping_info": None,
        "order_link": "http://localhost:3000/orders/42",
    }
    snapshot.update(overrides)
    return snapshot


class TestEmailService:
    """Test cases for email service"""

    def test_render_confirmation(self):
        body = render_template("emails/order_confirmation.txt", {"order": _snapshot()})

        assert "Order #42" in body
        assert "Phone x 1" in body
        assert "Discount (SAVE10): -KES 100.00" in body
        assert "Total: KES 1,094.00" in body
        assert "CBD Pickup, Moi Avenue" in body

    def test_render_template_not_found(self):
        with pytest.raises(Exception):
            render_template("non_existent.txt", {})

    @patch('services.email.send_email_task')
    def test_send_email_queues_task(self, mock_task):
        send_email("test@example.com", "Test Subject", "Test Body")

        mock_task.delay.assert_called_once_with("test@example.com", "Test Subject", "Test Body")

    @patch('services.email.send_email_task')
    def test_send_email_falls_back_to_direct(self, mock_task):
        mock_task.delay.side_effect = Exception("Celery not available")

        with patch('services.email._send_email_direct') as mock_direct:
            send_email("test@example.com", "Test Subject", "Test Body")
            mock_direct.assert_called_once_with("test@example.com", "Test Subject", "Test Body")

    @patch('services.email.settings')
    @patch('smtplib.SMTP')
    def test_send_email_direct_without_credentials(self, mock_smtp, mock_settings):
        mock_settings.SMTP_PASSWORD = ""

        _send_email_direct("test@example.com", "Test Subject", "Test Body")

        mock_smtp.assert_not_called()

    @patch('services.email.settings')
    @patch('smtplib.SMTP')
    def test_send_email_direct_real_credentials(self, mock_smtp, mock_settings):
        mock_settings.SMTP_PASSWORD = "real_password"
        mock_settings.SMTP_HOST = "smtp.gmail.com"
        mock_settings.SMTP_PORT = 587
        mock_settings.SMTP_USERNAME = "test@gmail.com"
        mock_settings.SMTP_FROM = None

        mock_server = Mock()
        mock_smtp.return_value.__enter__.return_value = mock_server

        _send_email_direct("test@example.com", "Test Subject", "Test Body")

        mock_smtp.assert_called_once_with("smtp.gmail.com", 587)
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("test@gmail.com", "real_password")
        mock_server.send_message.assert_called_once()

    @patch('services.email.send_email')
    @patch('services.email.render_template')
    def test_send_templated_email(self, mock_render, mock_send):
        mock_render.return_value = "Rendered content"

        send_templated_email("test@example.com", "Test Subject", "template.txt", {"key": "value"})

        mock_render.assert_called_once_with("template.txt", {"key": "value"})
        mock_send.assert_called_once_with("test@example.com", "Test Subject", "Rendered content")

    def test_order_confirmation(self, mock_email_send):
        send_order_confirmation("jane@example.com", _snapshot())

        assert mock_email_send[0]["subject"] == "Order confirmation #42"
        assert "View your order: http://localhost:3000/orders/42" in mock_email_send[0]["body"]

    def test_status_update_includes_tracking(self, mock_email_send):
        snapshot = _snapshot(status="shipped", shipping_info={"tracking_number": "G4S-1", "carrier": "G4S"})
        send_order_status_update("jane@example.com", snapshot)

        assert mock_email_send[0]["subject"] == "Your order has been shipped"
        assert "Order #42 is now shipped." in mock_email_send[0]["body"]
        assert "Tracking number: G4S-1" in mock_email_send[0]["body"]

    def test_email_task_skips_in_tests(self):
        assert send_email_task.run("a@example.com", "s", "b")["status"] == "skipped"


def _response(payload, status_code=200):
    resp = Mock()
    resp.json.return_value = payload
    resp.status_code = status_code
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestPesapalClient:
    """Gateway client over a mocked HTTP session"""

    def _client(self, http, ipn_id="ipn-1"):
        return PesapalClient("https://pay.example.com/v3/", "key", "secret", timeout=5, ipn_id=ipn_id, http=http)

    def test_create_transaction(self):
        http = Mock()
        http.request.side_effect = [
            _response({"token": "tok", "status": "200"}),
            _response({"order_tracking_id": "TRK-9", "merchant_reference": "ORD1-abc", "redirect_url": "https://pay/9"}),
        ]

        tx = self._client(http).create_transaction(
            merchant_reference="ORD1-abc",
            amount="1094.00",
            currency="KES",
            description="Order #1",
            callback_url="http://localhost:3000/orders/1",
            billing_address={"email_address": "jane@example.com"},
        )

        assert tx.tracking_id == "TRK-9"
        assert tx.redirect_url == "https://pay/9"
        method, url = http.request.call_args_list[1].args
        kwargs = http.request.call_args_list[1].kwargs
        assert (method, url) == ("POST", "https://pay.example.com/v3/api/Transactions/SubmitOrderRequest")
        assert kwargs["json"]["amount"] == 1094.0
        assert kwargs["json"]["notification_id"] == "ipn-1"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["timeout"] == 5

    def test_registers_ipn_when_not_configured(self):
        http = Mock()
        http.request.side_effect = [
            _response({"token": "tok"}),
            _response({"ipn_id": "ipn-new"}),
            _response({"order_tracking_id": "TRK-1", "redirect_url": "https://pay/1"}),
        ]

        self._client(http, ipn_id=None).create_transaction(
            merchant_reference="ORD1-x",
            amount=10,
            currency="KES",
            description="Order #1",
            callback_url="cb",
            billing_address={},
        )

        register = http.request.call_args_list[1]
        assert register.args[1].endswith("/api/URLSetup/RegisterIPN")
        assert register.kwargs["json"]["url"].endswith("/payments/ipn")
        assert http.request.call_args_list[2].kwargs["json"]["notification_id"] == "ipn-new"

    def test_query_status(self):
        http = Mock()
        http.request.side_effect = [
            _response({"token": "tok"}),
            _response({"payment_status_description": "Completed", "status_code": 1}),
        ]

        status = self._client(http).query_status("TRK-1")

        assert status.status == "Completed"
        assert http.request.call_args_list[1].kwargs["params"] == {"orderTrackingId": "TRK-1"}

    def test_timeout_is_upstream_error(self):
        http = Mock()
        http.request.side_effect = requests.Timeout("slow")

        with pytest.raises(UpstreamGatewayError) as exc:
            self._client(http).request_token()
        assert exc.value.retryable is True

    def test_http_error_is_upstream_error(self):
        http = Mock()
        http.request.return_value = _response({}, status_code=500)

        with pytest.raises(UpstreamGatewayError):
            self._client(http).request_token()

    def test_error_body_is_upstream_error(self):
        http = Mock()
        http.request.return_value = _response({"error": {"code": "invalid_consumer_key", "message": "bad key"}})

        with pytest.raises(UpstreamGatewayError) as exc:
            self._client(http).request_token()
        assert "bad key" in exc.value.message


@contextmanager
def _fake_session():
    yield Mock()


class TestPaymentRefreshTask:
    """Background re-query after a failed notification"""

    @patch('tasks.payment_tasks.get_payment_gateway')
    @patch('tasks.payment_tasks.db_session', _fake_session)
    @patch('tasks.payment_tasks.refresh_payment_status')
    def test_reconciles(self, mock_refresh, mock_gateway):
        mock_refresh.return_value = ReconcileResult(1, "TRK-1", "completed", "COMPLETED", True)

        result = refresh_payment_status_task.run("TRK-1")

        assert result == {"status": "reconciled", "tracking_id": "TRK-1", "payment_status": "completed", "applied": True}

    @patch('tasks.payment_tasks.get_payment_gateway')
    @patch('tasks.payment_tasks.db_session', _fake_session)
    @patch('tasks.payment_tasks.refresh_payment_status')
    def test_unknown_tracking_id_is_dropped(self, mock_refresh, mock_gateway):
        mock_refresh.side_effect = NotFoundError("No order matches this payment")

        assert refresh_payment_status_task.run("TRK-x")["status"] == "unknown"

    @patch('tasks.payment_tasks.get_payment_gateway')
    @patch('tasks.payment_tasks.db_session', _fake_session)
    @patch('tasks.payment_tasks.refresh_payment_status')
    def test_gateway_failure_retries(self, mock_refresh, mock_gateway):
        mock_refresh.side_effect = UpstreamGatewayError("Payment provider timed out, please retry")

        with patch.object(refresh_payment_status_task, "retry", side_effect=Retry()) as mock_retry:
            with pytest.raises(Retry):
                refresh_payment_status_task.run("TRK-1")

        assert mock_retry.call_args.kwargs["countdown"] == 5
