import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from tradepay.catalog import Catalog
from tradepay.config import Settings
from tradepay.database import StoreRegistry
from tradepay.errors import InvalidStateError, SettlementError, ValidationError
from tradepay.ledger import TokenLedgerStore
from tradepay.orders import OrderStateMachine
from tradepay.paypal_service import PayPalGateway
from tradepay.price_cache import PriceAdviceCache
from tradepay.rewards import RewardEngine, RewardPolicy
from tradepay.routes import router
from tradepay.slips import SlipCollector
from tradepay.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


def build_gateways(settings):
    return {
        "paypal": PayPalGateway(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            base_url=settings.paypal_base_url,
            webhook_id=settings.paypal_webhook_id,
            client_base_url=settings.client_base_url,
            timeout=settings.http_timeout,
        ),
        "card": StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
    }


def process_notification(orders, gateway, headers, raw_body):
    """Verify and apply one provider notification; returns (status, body)."""
    if not gateway.verify_notification(headers, raw_body):
        logger.warning("%s webhook discarded: signature verification failed", gateway.name)
        return 400, {"ok": False, "detail": "Invalid signature"}

    notification = gateway.parse_notification(raw_body)
    if notification is None:
        logger.warning("%s webhook ignored: unreadable body", gateway.name)
        return 200, {"ok": True, "ignored": True, "reason": "invalid_body"}

    logger.info("%s webhook %s (%s)", gateway.name, notification.event_type, notification.event_id)
    if not notification.paid:
        return 200, {"ok": True, "updated": False}

    order_id = notification.order_id or orders.find_by_provider_order(notification.provider_order_id)
    if not order_id:
        logger.warning("%s webhook: no local order for provider order %s",
                       gateway.name, notification.provider_order_id)
        return 200, {"ok": True, "ignored": True, "reason": "order_not_found"}

    try:
        settlement = orders.confirm_gateway_payment(order_id, notification.as_payload())
    except (ValidationError, InvalidStateError) as exc:
        logger.warning("%s webhook for order %s ignored: %s", gateway.name, order_id, exc.message)
        return 200, {"ok": True, "ignored": True, "reason": exc.code}

    return 200, {
        "ok": True,
        "updated": True,
        "order_id": settlement.order.id,
        "status": settlement.order.status,
    }


def create_app(settings=None, stores=None, gateways=None, price_advisor=None):
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    owns_stores = stores is None
    stores = stores or StoreRegistry(settings.database_urls)
    gateways = build_gateways(settings) if gateways is None else gateways

    ledger = TokenLedgerStore(stores, symbol=settings.token_symbol)
    rewards = RewardEngine(stores, ledger, RewardPolicy(
        buyer_rate=settings.token_reward_buyer_rate,
        seller_rate=settings.token_reward_seller_rate,
        minimum=settings.token_reward_min,
    ))
    orders = OrderStateMachine(stores, Catalog(stores), rewards, gateways, currency=settings.currency)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stores.create_all()
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        yield
        for gateway in gateways.values():
            if hasattr(gateway, "close"):
                gateway.close()
        if owns_stores:
            stores.dispose()

    app = FastAPI(title="H2H Settlement Service", lifespan=lifespan)

    app.state.settings = settings
    app.state.stores = stores
    app.state.gateways = gateways
    app.state.ledger = ledger
    app.state.rewards = rewards
    app.state.orders = orders
    app.state.slips = SlipCollector(settings.upload_dir, max_bytes=settings.slip_max_bytes)
    app.state.price_cache = PriceAdviceCache(settings.price_advice_cache_max, settings.price_advice_cache_ttl)
    app.state.price_advisor = price_advisor

    app.include_router(router)
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    async def handle_webhook(request: Request, method: str):
        gateway = request.app.state.gateways.get(method)
        if gateway is None:
            return JSONResponse(status_code=404, content={"ok": False, "detail": "Gateway not configured"})
        payload = await request.body()
        status, body = await run_in_threadpool(
            process_notification, request.app.state.orders, gateway, dict(request.headers), payload
        )
        return JSONResponse(status_code=status, content=body)

    @app.post("/webhook")
    async def stripe_webhook(request: Request):
        return await handle_webhook(request, "card")

    @app.post("/webhook/paypal")
    async def paypal_webhook(request: Request):
        return await handle_webhook(request, "paypal")

    return app
