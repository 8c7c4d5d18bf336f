import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import NamedTuple

from sqlalchemy import func, or_, select, update

from tradepay.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SettlementError,
    UpstreamError,
    ValidationError,
)
from tradepay.models import Order, OrderStatus, Payment, PaymentMethod, PaymentStatus
from tradepay.rewards import REWARDABLE_ORDER_STATUSES

logger = logging.getLogger(__name__)

BUYER = "buyer"
SELLER = "seller"
ADMIN = "admin"


@dataclass(frozen=True)
class Transition:
    sources: frozenset
    target: str
    allowed: frozenset


NON_TERMINAL = frozenset({
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PAID_PENDING_VERIFY,
    OrderStatus.PAID_VERIFIED,
})

TRANSITIONS = {
    "submit_proof": Transition(
        frozenset({OrderStatus.PENDING_PAYMENT}), OrderStatus.PAID_PENDING_VERIFY, frozenset({BUYER, ADMIN})),
    "verify": Transition(
        frozenset({OrderStatus.PAID_PENDING_VERIFY}), OrderStatus.PAID_VERIFIED, frozenset({SELLER, ADMIN})),
    "confirm_gateway_payment": Transition(
        frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.PAID_PENDING_VERIFY}),
        OrderStatus.PAID_VERIFIED, frozenset()),
    "complete": Transition(
        frozenset({OrderStatus.PAID_VERIFIED}), OrderStatus.FULFILLED, frozenset({BUYER, SELLER})),
    "cancel": Transition(NON_TERMINAL, OrderStatus.CANCELLED, frozenset({BUYER, SELLER, ADMIN})),
    "refund": Transition(frozenset({OrderStatus.PAID_VERIFIED}), OrderStatus.REFUNDED, frozenset({ADMIN})),
}


class Settlement(NamedTuple):
    order: Order
    payment: Payment


def parties_of(actor, order):
    roles = set()
    if actor is None:
        return roles
    if actor.user_id == order.buyer_id:
        roles.add(BUYER)
    if actor.user_id == order.seller_id:
        roles.add(SELLER)
    if actor.is_admin:
        roles.add(ADMIN)
    return roles


def parse_amount(amount):
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number", amount=str(amount)) from None
    if not value.is_finite():
        raise ValidationError("amount must be a number", amount=str(amount))
    if value < 0:
        raise ValidationError("amount must be non-negative", amount=str(amount))
    return value.quantize(Decimal("0.01"))


def generate_order_number(now):
    return f"H2H-{now.year}-{secrets.token_hex(4).upper()}"


class OrderStateMachine:
    def __init__(self, stores, catalog, rewards, gateways=None, currency="THB", clock=None):
        self.stores = stores
        self.catalog = catalog
        self.rewards = rewards
        self.gateways = gateways or {}
        self.currency = currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # --- creation ---

    def create_order(self, item_id, buyer_id, seller_id=None, amount=None, method=PaymentMethod.CASH,
                     currency=None):
        if method not in PaymentMethod.ALL:
            raise ValidationError("unknown payment method", method=method, allowed=sorted(PaymentMethod.ALL))
        if amount is not None:
            amount = parse_amount(amount)
        if not item_id or not buyer_id:
            raise ValidationError("item_id and buyer_id are required")

        item = self.catalog.find_item(item_id)
        if item is None:
            raise ValidationError("item not found", item_id=item_id)

        seller_id = seller_id or item.seller_id
        if item.seller_id != seller_id:
            raise ValidationError("item does not belong to seller", item_id=item_id, seller_id=seller_id)
        if buyer_id == seller_id:
            raise ValidationError("buyer and seller must differ")
        if self.catalog.find_user(buyer_id) is None:
            raise ValidationError("buyer not found", buyer_id=buyer_id)
        if self.catalog.find_user(seller_id) is None:
            raise ValidationError("seller not found", seller_id=seller_id)

        if amount is None:
            amount = parse_amount(item.price)
        currency = currency or self.currency
        now = self._clock()

        with self.stores.trading() as session:
            order = Order(
                order_number=generate_order_number(now),
                item_id=item_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                amount=amount,
                currency=currency,
                status=OrderStatus.PENDING_PAYMENT,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            session.flush()

            payment = Payment(
                order_id=order.id,
                item_id=item_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                amount=amount,
                currency=currency,
                method=method,
                status=PaymentStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            session.add(payment)
            session.commit()

        logger.info("order %s created: item=%s buyer=%s seller=%s amount=%s %s via %s",
                    order.id, item_id, buyer_id, seller_id, amount, currency, method)
        return Settlement(order, payment)

    # --- manual flow ---

    def submit_proof(self, order_id, actor, proof_ref):
        if not proof_ref:
            raise ValidationError("proof reference is required")

        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "submit_proof")
            if payment.method not in PaymentMethod.MANUAL:
                raise InvalidStateError("proof is only accepted for manual payment methods", method=payment.method)
            return self._apply(session, order, payment, "submit_proof", {"slip_image_url": proof_ref})

    def verify(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "verify")
            self._check_source(order, "verify")
            self._expect_payment(payment, PaymentStatus.PENDING)
            now = self._clock()
            settled = self._apply(session, order, payment, "verify",
                                  {"status": PaymentStatus.PAID, "paid_at": now}, now=now)

        # the transition is committed; a failed credit is left for reconcile
        try:
            self.rewards.reward_order(settled.payment.id)
        except SettlementError as exc:
            logger.error("order %s verified but rewards failed: %s", order_id, exc.message)
        return self.get_order(order_id)

    # --- gateway flow ---

    def begin_gateway_payment(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "begin_gateway_payment", allowed=frozenset({BUYER}))
            gateway = self._gateway_for(payment)
            if order.status != OrderStatus.PENDING_PAYMENT or payment.status != PaymentStatus.PENDING:
                raise InvalidStateError("checkout is only possible while payment is pending",
                                        order_status=order.status)

        intent = gateway.create_intent(
            payment.amount, payment.currency, order.id, f"H2H Order {order.order_number}")

        with self.stores.trading() as session:
            result = session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                .values(provider=intent.provider, provider_order_id=intent.provider_order_id,
                        updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError("payment changed while creating the provider intent", order_id=order_id)
            session.commit()

        logger.info("order %s: %s intent %s", order_id, intent.provider, intent.provider_order_id)
        return intent, self.get_order(order_id)

    def capture_gateway_payment(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "capture_gateway_payment", allowed=frozenset({BUYER, ADMIN}))
            gateway = self._gateway_for(payment)

        if payment.status == PaymentStatus.PAID:
            return Settlement(order, payment)
        if not payment.provider_order_id:
            raise InvalidStateError("no provider intent to capture; start checkout first", order_id=order_id)

        capture = gateway.capture(payment.provider_order_id)
        if not capture.completed:
            logger.info("order %s: capture of %s not completed (%s)", order_id, capture.provider_order_id,
                        capture.status)
            return Settlement(order, payment)

        return self.confirm_gateway_payment(order_id, {
            "provider": gateway.name,
            "provider_order_id": capture.provider_order_id,
            "capture_id": capture.capture_id,
        })

    def confirm_gateway_payment(self, order_id, provider_payload):
        """Mark a gateway payment paid. Safe to call any number of times."""
        provider_payload = provider_payload or {}

        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            if payment.method not in PaymentMethod.GATEWAY:
                raise InvalidStateError("order is not paid through a gateway", method=payment.method)

            provider_order_id = provider_payload.get("provider_order_id")
            if provider_order_id and payment.provider_order_id and provider_order_id != payment.provider_order_id:
                raise ValidationError("provider order id does not match payment",
                                      expected=payment.provider_order_id, received=provider_order_id)

            if payment.status == PaymentStatus.PAID:
                logger.info("order %s already paid, confirmation %s is a replay",
                            order_id, provider_payload.get("event_id"))
                settled = Settlement(order, payment)
            else:
                self._check_source(order, "confirm_gateway_payment")
                self._expect_payment(payment, PaymentStatus.PENDING)
                now = self._clock()
                settled = self._apply(session, order, payment, "confirm_gateway_payment", {
                    "status": PaymentStatus.PAID,
                    "paid_at": now,
                    "provider": provider_payload.get("provider") or payment.provider,
                    "provider_order_id": provider_order_id or payment.provider_order_id,
                    "provider_capture_id": provider_payload.get("capture_id") or payment.provider_capture_id,
                    "provider_event_id": provider_payload.get("event_id") or payment.provider_event_id,
                }, now=now)

        # idempotent: finishes a reward interrupted on an earlier delivery
        if settled.order.status in REWARDABLE_ORDER_STATUSES:
            self.rewards.reward_order(settled.payment.id)
        return self.get_order(order_id)

    # --- closing transitions ---

    def complete(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "complete")
            return self._apply(session, order, payment, "complete")

    def cancel(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "cancel")
            values = {"status": PaymentStatus.FAILED} if payment.status == PaymentStatus.PENDING else None
            # slip_image_url is kept for audit
            return self._apply(session, order, payment, "cancel", values)

    def refund(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "refund")
            self._check_source(order, "refund")
            self._expect_payment(payment, PaymentStatus.PAID)

        if payment.method in PaymentMethod.GATEWAY and payment.provider_order_id:
            self._gateway_for(payment).refund(payment.provider_order_id, payment.provider_capture_id)

        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            now = self._clock()
            # token rewards already issued are not reversed
            return self._apply(session, order, payment, "refund",
                               {"status": PaymentStatus.REFUNDED, "refunded_at": now}, now=now)

    def soft_delete(self, order_id, actor):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
            self._authorize(actor, order, "soft_delete", allowed=frozenset({ADMIN}))
            if order.status not in OrderStatus.TERMINAL:
                raise InvalidStateError("only closed orders can be deleted", order_status=order.status)

            now = self._clock()
            result = session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == order.status, Order.is_deleted.is_(False))
                .values(is_deleted=True, deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError("order changed concurrently", order_id=order_id)
            session.commit()
            logger.info("order %s soft-deleted by %s", order_id, actor.user_id)

    # --- reads ---

    def get_order(self, order_id, actor=None):
        with self.stores.trading() as session:
            order, payment = self._load(session, order_id)
        if actor is not None and not parties_of(actor, order):
            raise AuthorizationError("not a party to this order", order_id=order_id)
        return Settlement(order, payment)

    def get_payment(self, order_id, actor=None):
        return self.get_order(order_id, actor).payment

    def find_by_provider_order(self, provider_order_id):
        if not provider_order_id:
            return None
        with self.stores.trading() as session:
            return session.scalar(select(Payment.order_id).where(Payment.provider_order_id == provider_order_id))

    def list_orders(self, actor, buyer_id=None, seller_id=None, status=None, payment_status=None,
                    page=1, limit=20):
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), 100)

        query = select(Order).where(Order.is_deleted.is_(False))
        if not actor.is_admin:
            query = query.where(or_(Order.buyer_id == actor.user_id, Order.seller_id == actor.user_id))
        if buyer_id:
            query = query.where(Order.buyer_id == buyer_id)
        if seller_id:
            query = query.where(Order.seller_id == seller_id)
        if status:
            query = query.where(Order.status == status)
        if payment_status:
            query = query.where(Order.id.in_(select(Payment.order_id).where(Payment.status == payment_status)))

        with self.stores.trading() as session:
            total = session.scalar(select(func.count()).select_from(query.subquery()))
            orders = list(session.scalars(
                query.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit)
            ))
            payments = {
                p.order_id: p
                for p in session.scalars(select(Payment).where(Payment.order_id.in_([o.id for o in orders])))
            }

        return [Settlement(o, payments.get(o.id)) for o in orders], total

    # --- internals ---

    def _load(self, session, order_id):
        order = session.get(Order, order_id) if order_id else None
        if order is None or order.is_deleted:
            raise NotFoundError("order not found", order_id=order_id)
        payment = session.scalar(select(Payment).where(Payment.order_id == order.id))
        if payment is None:
            raise NotFoundError("payment not found for order", order_id=order_id)
        return order, payment

    def _authorize(self, actor, order, action, allowed=None):
        allowed = TRANSITIONS[action].allowed if allowed is None else allowed
        if not (parties_of(actor, order) & allowed):
            raise AuthorizationError(
                f"{action} requires one of: {', '.join(sorted(allowed))}",
                order_id=order.id,
            )

    def _check_source(self, order, action):
        transition = TRANSITIONS[action]
        if order.status not in transition.sources:
            raise InvalidStateError(
                f"cannot {action} an order in {order.status}",
                order_id=order.id,
                order_status=order.status,
                expected=sorted(transition.sources),
            )

    def _expect_payment(self, payment, status):
        if payment.status != status:
            raise InvalidStateError(
                f"payment is {payment.status}, expected {status}",
                order_id=payment.order_id,
                payment_status=payment.status,
            )

    def _gateway_for(self, payment):
        if payment.method not in PaymentMethod.GATEWAY:
            raise InvalidStateError("order is not paid through a gateway", method=payment.method)
        gateway = self.gateways.get(payment.method)
        if gateway is None:
            raise UpstreamError(f"no payment gateway configured for {payment.method}")
        return gateway

    def _apply(self, session, order, payment, action, payment_values=None, now=None):
        self._check_source(order, action)
        target = TRANSITIONS[action].target
        now = now or self._clock()

        moved = session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == order.status, Order.is_deleted.is_(False))
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            session.rollback()
            raise ConflictError("order changed concurrently, re-read and retry", order_id=order.id)

        if payment_values:
            changed = session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == payment.status)
                .values(updated_at=now, **payment_values)
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != 1:
                session.rollback()
                raise ConflictError("payment changed concurrently, re-read and retry", order_id=order.id)

        previous = order.status
        session.commit()
        session.refresh(order)
        session.refresh(payment)
        logger.info("order %s: %s -> %s (%s)", order.id, previous, target, action)
        return Settlement(order, payment)
