import logging
import math
from dataclasses import dataclass

from sqlalchemy import select, update

from tradepay.errors import InvalidStateError, NotFoundError, ValidationError
from tradepay.models import Order, OrderStatus, Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

BUYER = "buyer"
SELLER = "seller"
PARTIES = (BUYER, SELLER)

FLAG_BY_PARTY = {
    BUYER: Payment.buyer_token_rewarded,
    SELLER: Payment.seller_token_rewarded,
}

# cancelled and refunded orders never earn new rewards
REWARDABLE_ORDER_STATUSES = frozenset({OrderStatus.PAID_VERIFIED, OrderStatus.FULFILLED})


def reward_key(order_id, party):
    return f"reward:{order_id}:{party}"


@dataclass
class RewardPolicy:
    buyer_rate: float = 0.0
    seller_rate: float = 0.0
    minimum: int = 10

    def amount_for(self, amount, party):
        amount = float(amount or 0)
        if amount <= 0:
            return 0
        rate = self.buyer_rate if party == BUYER else self.seller_rate
        return max(self.minimum, math.floor(amount * rate))


class RewardEngine:
    """Credits loyalty tokens to the buyer and seller of a paid order.

    Each party is gated by its flag on the payment. The flag is claimed
    first with a compare-and-set (false -> true, only while the payment is
    paid and the order is verified or fulfilled) and the credit follows
    under the idempotency key ``reward:<order_id>:<party>``. If the credit
    fails the flag is released again. A crash in between leaves the flag
    set without a ledger row, which ``reconcile`` repairs.
    """

    def __init__(self, stores, ledger, policy=None):
        self.stores = stores
        self.ledger = ledger
        self.policy = policy or RewardPolicy()

    def reward_order(self, payment_id):
        return {party: self.maybe_reward_party(payment_id, party) for party in PARTIES}

    def maybe_reward_party(self, payment_id, party):
        """Return the credited amount, or None when there was nothing to do."""
        if party not in FLAG_BY_PARTY:
            raise ValidationError(f"unknown reward party: {party}")
        flag = FLAG_BY_PARTY[party]

        with self.stores.trading() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("payment not found", payment_id=payment_id)
            if getattr(payment, flag.key):
                return None
            if payment.status != PaymentStatus.PAID:
                raise InvalidStateError(
                    "rewards are only issued for paid payments",
                    payment_id=payment_id, payment_status=payment.status,
                )
            order = session.get(Order, payment.order_id)
            if order is None or order.status not in REWARDABLE_ORDER_STATUSES:
                logger.info("order %s is %s, no %s reward", payment.order_id,
                            order.status if order else "missing", party)
                return None

            claimed = session.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    flag.is_(False),
                    Payment.status == PaymentStatus.PAID,
                    Payment.order_id.in_(
                        select(Order.id).where(Order.status.in_(REWARDABLE_ORDER_STATUSES))
                    ),
                )
                .values({flag.key: True, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                session.rollback()
                logger.info("%s reward for payment %s already claimed", party, payment_id)
                return None
            session.commit()

            owner_id = payment.buyer_id if party == BUYER else payment.seller_id
            order_id = payment.order_id
            amount = self.policy.amount_for(payment.amount, party)

        if amount <= 0:
            logger.info("order %s has no reward value, %s flag set without credit", order_id, party)
            return 0

        try:
            self.ledger.credit(
                owner_id,
                amount,
                reward_key(order_id, party),
                order_id=order_id,
                meta={"party": party, "payment_id": payment_id},
            )
        except Exception:
            logger.exception("%s reward credit failed for order %s, releasing flag", party, order_id)
            self._release(payment_id, flag)
            raise

        logger.info("rewarded %s %s with %d tokens for order %s", party, owner_id, amount, order_id)
        return amount

    def _release(self, payment_id, flag):
        with self.stores.trading() as session:
            session.execute(
                update(Payment)
                .where(Payment.id == payment_id, flag.is_(True))
                .values({flag.key: False, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def _rewardable_payments(self, after_id, batch_size):
        query = (
            select(Payment)
            .join(Order, Order.id == Payment.order_id)
            .where(Payment.status == PaymentStatus.PAID, Order.status.in_(REWARDABLE_ORDER_STATUSES))
            .order_by(Payment.id)
            .limit(batch_size)
        )
        if after_id is not None:
            query = query.where(Payment.id > after_id)
        with self.stores.trading() as session:
            return list(session.scalars(query))

    def reconcile(self, batch_size=500):
        """Finish rewards left incomplete by a crash or a failed credit.

        Walks every rewardable payment in batches of ``batch_size``.
        Returns the number of credits applied.
        """
        repaired = 0
        after_id = None
        while True:
            payments = self._rewardable_payments(after_id, batch_size)
            if not payments:
                return repaired
            after_id = payments[-1].id
            for payment in payments:
                repaired += self._reconcile_payment(payment)

    def _reconcile_payment(self, payment):
        repaired = 0
        for party in PARTIES:
            if not getattr(payment, FLAG_BY_PARTY[party].key):
                if self.maybe_reward_party(payment.id, party):
                    repaired += 1
                continue

            amount = self.policy.amount_for(payment.amount, party)
            key = reward_key(payment.order_id, party)
            if amount <= 0 or self.ledger.has_entry(key):
                continue

            owner_id = payment.buyer_id if party == BUYER else payment.seller_id
            logger.warning("order %s: %s flag set without ledger entry, crediting", payment.order_id, party)
            if self.ledger.credit(
                owner_id,
                amount,
                key,
                order_id=payment.order_id,
                meta={"party": party, "payment_id": payment.id, "reconciled": True},
            ):
                repaired += 1
        return repaired
