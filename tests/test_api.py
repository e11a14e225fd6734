"""Tests for the FastAPI application and entry point.

Components are injected as mocks so the HTTP layer is tested in isolation
from the database and upstream APIs.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from chatgate.config import REQUIRED_CREDENTIALS, Settings
from chatgate.main import Services, create_app, main
from chatgate.reconciler import ReconcileResult, SubscriptionReconciler
from chatgate.router import MessageRouter
from chatgate.transport import InboundMessage

TELEGRAM_UPDATE = {
    "update_id": 10,
    "message": {
        "message_id": 1,
        "date": 1700000000,
        "chat": {"id": 1001, "type": "private"},
        "from": {"id": 1001, "is_bot": False, "first_name": "Ruth"},
        "text": "Tell me about grace.",
    },
}


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, public_base_url="https://bot.test")


@pytest.fixture
def services() -> Services:
    return Services(
        router=AsyncMock(spec=MessageRouter),
        reconciler=AsyncMock(spec=SubscriptionReconciler),
        session_maker=MagicMock(),
    )


@pytest.fixture
def client(settings, services):
    with TestClient(create_app(settings, services)) as test_client:
        yield test_client


# ============================================================================
# SERVICE ENDPOINTS
# ============================================================================
class TestServiceEndpoints:
    """Tests for / and /health."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    @pytest.mark.parametrize("db_ok,status", [(True, "healthy"), (False, "degraded")])
    def test_health(self, client, db_ok, status):
        with patch(
            "chatgate.main.check_database_connection", AsyncMock(return_value=db_ok)
        ):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == status

    def test_checkout_return_pages(self, client):
        assert "Thank you" in client.get("/checkout/success").text
        assert "canceled" in client.get("/checkout/cancel").text


# ============================================================================
# TELEGRAM PUSH
# ============================================================================
class TestTelegramWebhook:
    """Tests for the chat push endpoint."""

    def test_text_update_routed(self, client, services):
        response = client.post("/webhook", json=TELEGRAM_UPDATE)

        assert response.status_code == 200
        services.router.handle.assert_awaited_once()
        message = services.router.handle.await_args.args[0]
        assert isinstance(message, InboundMessage)
        assert message.platform_identity == "1001"

    def test_malformed_body_still_200(self, client, services):
        response = client.post(
            "/webhook", content=b"not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 200
        services.router.handle.assert_not_awaited()

    def test_non_text_update_not_routed(self, client, services):
        response = client.post("/webhook", json={"update_id": 11})

        assert response.status_code == 200
        services.router.handle.assert_not_awaited()


# ============================================================================
# STRIPE WEBHOOK
# ============================================================================
class TestStripeWebhook:
    """Tests for the payment provider endpoint."""

    def test_raw_body_and_signature_forwarded(self, client, services):
        services.reconciler.handle_event.return_value = ReconcileResult(
            acknowledged=True, status_code=200, action="ignored", event_type="customer.created"
        )

        response = client.post(
            "/stripe/webhook", content=b'{"id": "evt_1"}', headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "ignored"}
        services.reconciler.handle_event.assert_awaited_once_with(b'{"id": "evt_1"}', "t=1,v1=x")

    @pytest.mark.parametrize("status_code,action", [(400, "rejected"), (500, "store_failed")])
    def test_reject_status_propagated(self, client, services, status_code, action):
        services.reconciler.handle_event.return_value = ReconcileResult(
            acknowledged=False, status_code=status_code, action=action
        )

        response = client.post("/stripe/webhook", content=b"{}")

        assert response.status_code == status_code
        assert response.json() == {"received": False, "error": action}


# ============================================================================
# WEBHOOK SETUP
# ============================================================================
class TestWebhookSetup:
    """Tests for POST /webhook/setup."""

    def test_registers_public_url(self, settings, services):
        services.bot = AsyncMock()

        with TestClient(create_app(settings, services)) as client:
            response = client.post("/webhook/setup")

        assert response.json() == {"status": "success", "webhook_url": "https://bot.test/webhook"}
        services.bot.set_webhook.assert_awaited_once_with(url="https://bot.test/webhook")

    def test_reports_failure(self, settings, services):
        services.bot = AsyncMock()
        services.bot.set_webhook.side_effect = RuntimeError("unauthorized")

        with TestClient(create_app(settings, services)) as client:
            response = client.post("/webhook/setup")

        assert response.json()["status"] == "error"


# ============================================================================
# ENTRY POINT
# ============================================================================
class TestMain:
    """Tests for main()."""

    def test_missing_credentials_exit_1(self):
        settings = Settings(_env_file=None, **{name: "" for name in REQUIRED_CREDENTIALS})

        with (
            patch("chatgate.main.get_settings", return_value=settings),
            patch("chatgate.main.setup_logging"),
            patch("uvicorn.run") as run,
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
        run.assert_not_called()

    def test_complete_configuration_serves(self):
        settings = Settings(_env_file=None, **{name: "x" for name in REQUIRED_CREDENTIALS})

        with (
            patch("chatgate.main.get_settings", return_value=settings),
            patch("chatgate.main.setup_logging"),
            patch("chatgate.main.create_app") as create,
            patch("uvicorn.run") as run,
        ):
            main()

        create.assert_called_once_with(settings)
        run.assert_called_once_with(create.return_value, host="0.0.0.0", port=8000)
