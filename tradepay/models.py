import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String
from tradepay.database import TradingBase, TokenBase, UserBase


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return uuid.uuid4().hex


class OrderStatus:
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID_PENDING_VERIFY = "PAID_PENDING_VERIFY"
    PAID_VERIFIED = "PAID_VERIFIED"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    TERMINAL = frozenset({FULFILLED, CANCELLED, REFUNDED})


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod:
    CASH = "cash"
    TRANSFER = "transfer"
    PROMPTPAY = "promptpay"
    CARD = "card"
    PAYPAL = "paypal"

    ALL = frozenset({CASH, TRANSFER, PROMPTPAY, CARD, PAYPAL})
    MANUAL = frozenset({CASH, TRANSFER, PROMPTPAY})
    GATEWAY = frozenset({CARD, PAYPAL})


# --- trading partition ---

class Order(TradingBase):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    order_number = Column(String, unique=True, nullable=False)
    item_id = Column(String, index=True, nullable=False)
    buyer_id = Column(String, index=True, nullable=False)
    seller_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, default="THB", nullable=False)
    status = Column(String, index=True, nullable=False, default=OrderStatus.PENDING_PAYMENT)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Payment(TradingBase):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, unique=True, index=True, nullable=False)
    item_id = Column(String, index=True, nullable=False)
    buyer_id = Column(String, index=True, nullable=False)
    seller_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, default="THB", nullable=False)
    method = Column(String, index=True, nullable=False)            # cash | transfer | promptpay | card | paypal
    status = Column(String, index=True, nullable=False, default=PaymentStatus.PENDING)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    slip_image_url = Column(String, nullable=True)                 # manual methods only

    provider = Column(String, nullable=True)                       # gateway methods only
    provider_order_id = Column(String, index=True, nullable=True)  # PayPal order / Stripe PaymentIntent
    provider_capture_id = Column(String, nullable=True)
    provider_event_id = Column(String, nullable=True)

    buyer_token_rewarded = Column(Boolean, default=False, nullable=False)
    seller_token_rewarded = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# --- token partition ---

class TokenBalance(TokenBase):
    __tablename__ = "token_balances"

    owner_id = Column(String, primary_key=True)
    balance = Column(Integer, default=0, nullable=False)
    symbol = Column(String, default="BROC", nullable=False)
    version = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class TokenLedger(TokenBase):
    __tablename__ = "token_ledger"

    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True, nullable=False)
    order_id = Column(String, index=True, nullable=True)
    amount = Column(Integer, nullable=False)
    symbol = Column(String, default="BROC", nullable=False)
    type = Column(String, default="reward", nullable=False)        # reward | adjust
    reason = Column(String, nullable=True)
    idempotency_key = Column(String, unique=True, index=True, nullable=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# --- user partition ---

class User(UserBase):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=True)
    role = Column(String, default="user", nullable=False)          # user | admin
    is_deleted = Column(Boolean, default=False, nullable=False)


class Item(UserBase):
    # Listing records belong to the catalog; only the fields read here.
    __tablename__ = "items"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
