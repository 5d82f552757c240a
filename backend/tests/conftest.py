import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Settings are read at import time; point everything at test values first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SESSION_JWT_SECRET"] = "test-session-secret"
os.environ["FEDERATED_JWT_KEY"] = "test-federated-key"
os.environ["FEDERATED_JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["INTERNAL_API_KEY"] = "internal-test-key"
os.environ["PLATFORM_GOLD_EMAIL"] = "ops@summitbullion.test"
os.environ["PLATFORM_GOLD_PASSWORD"] = "pg-password"
os.environ["RESEND_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient

from bullion.database import Base, SessionLocal, engine
import bullion.db_models  # noqa: F401
from bullion.main import app
from bullion.models.cart import CartLineIn
from bullion.services.cart_store import cart_store
from bullion.services.identity import create_session_token, email_to_account_id
from bullion.services.identity_verification import IdentityVerificationGate, get_identity_verification_gate
from bullion.services.order_reconciler import OrderReconciler, get_order_reconciler
from bullion.services.payment_orchestrator import PaymentOrchestrator, get_payment_orchestrator
from bullion.services.stripe_provider import StripePaymentProvider
from bullion.services.supplier_gateway import OrderStatusSnapshot, PollResult, Quote, SubmissionResult

WEBHOOK_SECRET = "whsec_test_secret"
SHOPPER_EMAIL = "jane.doe@example.com"

Base.metadata.create_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeGateway:
    """Stands in for PlatformGoldGateway; records every call."""

    def __init__(self):
        self.quote = Quote(handle="quote-handle-1", amount=Decimal("1000.00"), handling_fee=Decimal("15.00"))
        self.submit_result = SubmissionResult(success=True, mode="order", order_id=5001, transaction_id="SO-5001")
        self.submit_error = None
        self.status_snapshot = OrderStatusSnapshot(id=5001, status="Pending Fulfillment")
        self.poll_result = PollResult(handle="quote-handle-1")
        self.search_results = []
        self.shipping_instruction = {"id": 12, "name": "Confidential Drop Ship to Customer"}
        self.update_error = None

        self.quote_requests = []
        self.submitted = []
        self.searches = []
        self.status_calls = []
        self.poll_calls = []
        self.updates = []

    async def build_order_request(self, **kwargs):
        return dict(kwargs)

    async def create_quote(self, request):
        self.quote_requests.append(request)
        return self.quote

    async def submit_order(self, request):
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return self.submit_result

    async def search_orders(self, **criteria):
        self.searches.append(criteria)
        return list(self.search_results)

    async def fetch_order_status(self, order_id):
        self.status_calls.append(order_id)
        return self.status_snapshot

    async def poll_order(self, handle):
        self.poll_calls.append(handle)
        return self.poll_result

    async def resolve_shipping_instruction(self, name=None):
        return self.shipping_instruction

    async def update_order(self, order_id, **changes):
        self.updates.append((order_id, changes))
        if self.update_error is not None:
            raise self.update_error
        return OrderStatusSnapshot(id=order_id, status="Pending Fulfillment")


class FakePaymentProvider(StripePaymentProvider):
    """Real webhook verification, in-memory PaymentIntents and verification sessions."""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)
        self.intents = {}
        self.updates = []
        self.verification_sessions = []

    async def create_payment_intent(self, *, amount, currency, metadata, receipt_email=None, description=None):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_abc",
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "receipt_email": receipt_email,
            "status": "requires_payment_method",
        }
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        return self.intents.get(intent_id)

    async def update_payment_intent(self, intent_id, *, amount, metadata):
        intent = self.intents[intent_id]
        intent["amount"] = amount
        intent["metadata"].update(metadata)
        self.updates.append((intent_id, amount, dict(metadata)))
        return intent

    async def create_verification_session(self, *, metadata, email=None):
        session = {
            "email": email,
            "id": f"vs_test_{len(self.verification_sessions) + 1}",
            "client_secret": "vs_client_secret_xyz",
            "metadata": dict(metadata),
            "status": "requires_input",
        }
        self.verification_sessions.append(session)
        return session


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send_order_confirmation(self, order):
        self.sent.append(order.id)
        return True, None


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_provider():
    return FakePaymentProvider()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def reconciler(fake_gateway, fake_notifier):
    return OrderReconciler(gateway=fake_gateway, cart=cart_store, notifier=fake_notifier)


@pytest.fixture
def client(fake_gateway, fake_provider, fake_notifier):
    app.dependency_overrides[get_payment_orchestrator] = lambda: PaymentOrchestrator(
        gateway=fake_gateway, provider=fake_provider, cart=cart_store
    )
    app.dependency_overrides[get_order_reconciler] = lambda: OrderReconciler(
        gateway=fake_gateway, cart=cart_store, notifier=fake_notifier
    )
    app.dependency_overrides[get_identity_verification_gate] = lambda: IdentityVerificationGate(
        provider=fake_provider
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def account_id():
    return email_to_account_id(SHOPPER_EMAIL)


@pytest.fixture
def auth_headers():
    token = create_session_token(SHOPPER_EMAIL)
    return {"Authorization": f"Bearer {token}", "X-Auth-Type": "email"}


@pytest.fixture
def other_auth_headers():
    token = create_session_token("someone.else@example.com")
    return {"Authorization": f"Bearer {token}", "X-Auth-Type": "email"}


@pytest.fixture
def gold_eagle():
    """A 1 oz coin priced at $1000 with the standard 2% markup."""
    return {
        "itemId": 1001,
        "sku": "AGE-1OZ",
        "name": "1 oz American Gold Eagle",
        "quantity": 1,
        "pricing": {
            "basePrice": 1000.00,
            "markupPercentage": 2,
            "markupAmount": 20.00,
            "finalPrice": 1020.00,
        },
        "metalSymbol": "AU",
        "metalOz": 1.0,
        "manufacturer": "US Mint",
    }


@pytest.fixture
def fill_cart(db, gold_eagle):
    def _fill(account_id, quantity=1):
        item = CartLineIn.model_validate({**gold_eagle, "quantity": quantity})
        return cart_store.add(db, account_id, item)

    return _fill


@pytest.fixture
def shipping_address():
    return {
        "fullName": "Jane Doe",
        "streetAddress": "100 Main St",
        "aptSuite": "Apt 4",
        "city": "Austin",
        "state": "TX",
        "zipCode": "78701",
        "country": "US",
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def post_webhook(client):
    def _post(event, signature=None):
        payload = json.dumps(event).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        headers["stripe-signature"] = signature if signature is not None else sign_payload(payload)
        return client.post("/api/payments/webhook", content=payload, headers=headers)

    return _post
