"""chatgate service - FastAPI application.

Receives Telegram webhook pushes and Stripe webhook deliveries.

Architecture:
    User → Telegram → /webhook → MessageRouter → UsageGate → ConversationEngine → OpenAI
                                              ↘ CheckoutIssuer → Stripe Checkout
    Stripe → /stripe/webhook → SubscriptionReconciler → AccountStore
"""

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker
from telegram import Bot

from chatgate.billing import StripeBilling
from chatgate.checkout import CheckoutIssuer
from chatgate.completion import CompletionClient
from chatgate.config import Settings, get_settings
from chatgate.conversation import ConversationEngine
from chatgate.database import (
    check_database_connection,
    close_db_connection,
    create_db_and_tables,
    create_engine,
    create_session_maker,
)
from chatgate.exceptions import ConfigurationError
from chatgate.logging_config import setup_logging
from chatgate.reconciler import SubscriptionReconciler
from chatgate.router import MessageRouter
from chatgate.store import AccountStore
from chatgate.transport import TelegramTransport, parse_telegram_update
from chatgate.usage_gate import UsageGate

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

_RETURN_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 4em;">
<h1>{title}</h1><p>{body}</p></body></html>"""


@dataclass
class Services:
    """Everything the HTTP layer hands requests to.

    Attributes:
        router: Inbound chat message orchestrator
        reconciler: Stripe webhook consumer
        session_maker: Database session factory (health checks)
        bot: Telegram bot, None when the transport is faked
        engine: Database engine, None when the store is faked
    """

    router: MessageRouter
    reconciler: SubscriptionReconciler
    session_maker: sessionmaker
    bot: Bot | None = None
    engine: AsyncEngine | None = None


def build_services(settings: Settings) -> Services:
    """Construct every component with explicit dependencies."""
    engine = create_engine(settings.async_database_url, echo=settings.debug)
    session_maker = create_session_maker(engine)
    store = AccountStore(session_maker)

    billing = StripeBilling(settings.stripe_secret_key, settings.upstream_timeout_seconds)
    completion = CompletionClient(
        settings.openai_api_key,
        model=settings.completion_model,
        max_tokens=settings.completion_max_tokens,
        temperature=settings.completion_temperature,
        timeout_seconds=settings.upstream_timeout_seconds,
        base_url=settings.openai_base_url,
    )
    bot = Bot(settings.telegram_bot_token)

    router = MessageRouter(
        store=store,
        gate=UsageGate(billing, settings.free_message_limit),
        checkout=CheckoutIssuer(
            billing,
            monthly_price_id=settings.stripe_monthly_price_id,
            yearly_price_id=settings.stripe_yearly_price_id,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        ),
        engine=ConversationEngine(
            store, completion, settings.persona_prompt, settings.history_limit
        ),
        transport=TelegramTransport(bot, settings.parse_mode),
        free_limit=settings.free_message_limit,
        portal_url=settings.customer_portal_url,
    )
    reconciler = SubscriptionReconciler(
        store,
        billing,
        settings.stripe_webhook_secret,
        invoice_paid_reasserts_active=settings.invoice_paid_reasserts_active,
    )
    return Services(
        router=router,
        reconciler=reconciler,
        session_maker=session_maker,
        bot=bot,
        engine=engine,
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings (defaults to environment)
        services: Pre-built components; when given, the lifespan neither
            builds nor tears them down
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            logger.info("🚀 Starting chatgate service...")
            app.state.services = build_services(settings)
            await create_db_and_tables(app.state.services.engine)
            await app.state.services.bot.initialize()
            logger.info("✅ chatgate service started")
        else:
            app.state.services = services

        yield

        if owned:
            logger.info("🛑 Shutting down chatgate service...")
            await app.state.services.bot.shutdown()
            await close_db_connection(app.state.services.engine)
            logger.info("✅ Shutdown complete")

    app = FastAPI(
        title="chatgate",
        description="Billing-gated LLM chat relay for Telegram",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.get("/")
    async def root() -> dict:
        """Service information."""
        return {"service": settings.app_name, "version": VERSION, "status": "running"}

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Health status of the service and its database."""
        db_healthy = await check_database_connection(request.app.state.services.session_maker)
        return {
            "status": "healthy" if db_healthy else "degraded",
            "database": "connected" if db_healthy else "disconnected",
            "version": VERSION,
        }

    @app.post(settings.telegram_webhook_path)
    async def telegram_webhook(request: Request) -> Response:
        """Telegram push endpoint.

        Always returns 200 so Telegram does not redeliver a message whose
        turn already failed and was reported to the user.
        """
        services: Services = request.app.state.services
        try:
            payload = await request.json()
            message = parse_telegram_update(payload, services.bot)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Error parsing Telegram update: {e}")
            return Response(status_code=200)

        if message is not None:
            await services.router.handle(message)
        return Response(status_code=200)

    @app.post(settings.stripe_webhook_path)
    async def stripe_webhook(request: Request) -> JSONResponse:
        """Stripe webhook endpoint. The raw body is required for signature checks."""
        services: Services = request.app.state.services
        raw_body = await request.body()
        signature = request.headers.get("stripe-signature")

        result = await services.reconciler.handle_event(raw_body, signature)
        if result.acknowledged:
            return JSONResponse({"received": True, "action": result.action})
        return JSONResponse(
            {"received": False, "error": result.action}, status_code=result.status_code
        )

    @app.post("/webhook/setup")
    async def setup_webhook(request: Request) -> dict[str, Any]:
        """Register this service's push URL with Telegram."""
        services: Services = request.app.state.services
        webhook_url = f"{settings.public_base_url.rstrip('/')}{settings.telegram_webhook_path}"
        try:
            await services.bot.set_webhook(url=webhook_url)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to setup webhook: {e}")
            return {"status": "error", "error": str(e)}
        logger.info(f"✅ Webhook configured: {webhook_url}")
        return {"status": "success", "webhook_url": webhook_url}

    @app.get("/checkout/success", response_class=HTMLResponse)
    async def checkout_success() -> str:
        return _RETURN_PAGE.format(
            title="Thank you!",
            body="Your subscription is being activated. You can return to the chat.",
        )

    @app.get("/checkout/cancel", response_class=HTMLResponse)
    async def checkout_cancel() -> str:
        return _RETURN_PAGE.format(
            title="Checkout canceled",
            body="No charge was made. You can return to the chat and subscribe any time.",
        )

    return app


def main() -> None:
    """Validate configuration and serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(level=settings.log_level)

    try:
        missing = settings.missing_credentials()
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}", missing=missing
            )
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
