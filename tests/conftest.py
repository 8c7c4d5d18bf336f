import json
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from tradepay.auth import Actor
from tradepay.catalog import Catalog
from tradepay.config import Settings
from tradepay.database import StoreRegistry
from tradepay.ledger import TokenLedgerStore
from tradepay.models import Item, User
from tradepay.orders import OrderStateMachine
from tradepay.paypal_service import PayPalGateway
from tradepay.rewards import RewardEngine, RewardPolicy
from tradepay.stripe_service import StripeGateway

JWT_SECRET = "test-secret"
REWARD = 10

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"
OTHER_ID = "other-1"
ADMIN_ID = "admin-1"
ITEM_ID = "item-1"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class PayPalSandbox:
    """Stands in for the PayPal REST API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self.overrides = {}
        self.verification_status = "SUCCESS"

    def handler(self, request):
        self.requests.append(request)
        path = request.url.path

        if path in self.overrides:
            status, body = self.overrides[path]
            return httpx.Response(status, json=body)

        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "PP-ORDER-1",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": "https://paypal.test/v2/checkout/orders/PP-ORDER-1"},
                    {"rel": "approve", "href": "https://paypal.test/checkoutnow?token=PP-ORDER-1"},
                ],
            })
        if path.endswith("/capture"):
            return httpx.Response(201, json={
                "id": path.split("/")[-2],
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
            })
        if path.endswith("/refund"):
            return httpx.Response(201, json={"id": "REF-1", "status": "COMPLETED"})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def paths(self):
        return [r.url.path for r in self.requests]


def capture_completed_event(order_id, event_id="WH-EVT-1", provider_order_id="PP-ORDER-1"):
    return json.dumps({
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1",
            "status": "COMPLETED",
            "custom_id": order_id,
            "amount": {"currency_code": "THB", "value": "100.00"},
            "supplementary_data": {"related_ids": {"order_id": provider_order_id}},
        },
    })


def token_for(user_id, role="user"):
    token = jwt.encode({"sub": user_id, "role": role}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        trading_database_url=f"sqlite:///{tmp_path}/trading.db",
        token_database_url=f"sqlite:///{tmp_path}/token.db",
        user_database_url=f"sqlite:///{tmp_path}/user.db",
        jwt_secret=JWT_SECRET,
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_base_url="https://paypal.test",
        upload_dir=tmp_path / "uploads",
        token_reward_min=REWARD,
    )


@pytest.fixture
def stores(settings):
    registry = StoreRegistry(settings.database_urls)
    registry.create_all()
    yield registry
    registry.drop_all()
    registry.dispose()


@pytest.fixture
def catalog(stores):
    with stores.user() as session:
        session.add_all([
            User(id=BUYER_ID, email="buyer@example.com"),
            User(id=SELLER_ID, email="seller@example.com"),
            User(id=OTHER_ID, email="other@example.com"),
            User(id=ADMIN_ID, email="admin@example.com", role="admin"),
            Item(id=ITEM_ID, seller_id=SELLER_ID, title="Film camera", price=Decimal("100.00")),
            Item(id="item-gone", seller_id=SELLER_ID, title="Sold lamp", price=Decimal("50.00"), is_deleted=True),
        ])
        session.commit()
    return Catalog(stores)


@pytest.fixture
def paypal_sandbox():
    return PayPalSandbox()


@pytest.fixture
def paypal(paypal_sandbox):
    gateway = PayPalGateway(
        client_id="client-id",
        client_secret="client-secret",
        base_url="https://paypal.test",
        client=httpx.Client(transport=httpx.MockTransport(paypal_sandbox.handler)),
        retry_backoff=0,
    )
    yield gateway
    gateway.close()


@pytest.fixture
def gateways(paypal):
    return {"paypal": paypal, "card": StripeGateway("sk_test_123")}


@pytest.fixture
def ledger(stores):
    return TokenLedgerStore(stores)


@pytest.fixture
def rewards(stores, ledger):
    return RewardEngine(stores, ledger, RewardPolicy(minimum=REWARD))


@pytest.fixture
def machine(stores, catalog, rewards, gateways):
    return OrderStateMachine(stores, catalog, rewards, gateways)


@pytest.fixture
def buyer():
    return Actor(BUYER_ID)


@pytest.fixture
def seller():
    return Actor(SELLER_ID)


@pytest.fixture
def admin():
    return Actor(ADMIN_ID, role="admin")


@pytest.fixture
def stranger():
    return Actor(OTHER_ID)


@pytest.fixture
def client(settings, stores, catalog, gateways):
    from tradepay.main import create_app

    with TestClient(create_app(settings, stores=stores, gateways=gateways)) as c:
        yield c
