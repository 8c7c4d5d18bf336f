import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from tradepay.errors import ConflictError, ValidationError
from tradepay.models import TokenBalance, TokenLedger, utcnow

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class TokenLedgerStore:
    """Token balances and their ledger, in the token partition.

    A movement is one transaction: insert the ledger row (unique
    idempotency key) and apply the delta to the balance with a
    compare-and-set on ``version``. A duplicate key means the movement was
    already applied.
    """

    def __init__(self, stores, symbol="BROC", max_attempts=MAX_CAS_ATTEMPTS):
        self.stores = stores
        self.symbol = symbol
        self.max_attempts = max_attempts

    def balance_of(self, owner_id):
        with self.stores.token() as session:
            balance = session.get(TokenBalance, owner_id)
            return balance.balance if balance else 0

    def has_entry(self, idempotency_key):
        with self.stores.token() as session:
            return session.scalar(
                select(TokenLedger.id).where(TokenLedger.idempotency_key == idempotency_key)
            ) is not None

    def entries_for(self, owner_id):
        with self.stores.token() as session:
            return list(session.scalars(
                select(TokenLedger).where(TokenLedger.owner_id == owner_id).order_by(TokenLedger.created_at)
            ))

    def credit(self, owner_id, amount, idempotency_key, order_id=None, reason="purchase_reward", meta=None):
        if amount < 0:
            raise ValidationError("credit amount must be non-negative", amount=amount)
        return self.apply(owner_id, amount, idempotency_key, order_id=order_id,
                          type_="reward", reason=reason, meta=meta)

    def apply(self, owner_id, delta, idempotency_key, order_id=None, type_="adjust", reason=None, meta=None):
        """Apply ``delta`` to the owner's balance once per ``idempotency_key``.

        Returns True when applied, False when the key was already used.
        Raises ValidationError if the balance would go negative and
        ConflictError when the balance kept changing underneath us.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")

        for attempt in range(1, self.max_attempts + 1):
            with self.stores.token() as session:
                session.add(TokenLedger(
                    owner_id=owner_id,
                    order_id=order_id,
                    amount=delta,
                    symbol=self.symbol,
                    type=type_,
                    reason=reason,
                    idempotency_key=idempotency_key,
                    meta=meta or {},
                ))
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    logger.info("ledger entry %s already applied, skipping", idempotency_key)
                    return False

                if self._apply_to_balance(session, owner_id, delta):
                    session.commit()
                    logger.info("ledger %s: %+d %s for %s", idempotency_key, delta, self.symbol, owner_id)
                    return True

                session.rollback()
                logger.debug("balance CAS lost for %s (attempt %d/%d)", owner_id, attempt, self.max_attempts)

        raise ConflictError("token balance changed concurrently, retry later", owner_id=owner_id)

    def _apply_to_balance(self, session, owner_id, delta):
        current = session.execute(
            select(TokenBalance).where(TokenBalance.owner_id == owner_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if current is None:
            if delta < 0:
                raise ValidationError("insufficient token balance", owner_id=owner_id, balance=0)
            session.add(TokenBalance(owner_id=owner_id, balance=delta, symbol=self.symbol,
                                     version=1, updated_at=utcnow()))
            try:
                session.flush()
            except IntegrityError:
                # created by a concurrent first credit
                return False
            return True

        if current.balance + delta < 0:
            raise ValidationError("insufficient token balance", owner_id=owner_id, balance=current.balance)

        result = session.execute(
            update(TokenBalance)
            .where(TokenBalance.owner_id == owner_id, TokenBalance.version == current.version)
            .values(balance=TokenBalance.balance + delta, version=TokenBalance.version + 1,
                    updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
