"""
Storage-backed ledgers: users, orders, balances and withdrawals.

Each repository owns a session factory and opens one short transaction per
call. BalanceRepository.apply_transaction additionally accepts an outer
session so a balance change can commit together with an order update.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from common.error_handling import (
    InsufficientFundsError, LoginTakenError, NotFoundError, OrderConflictError,
    StorageError, ValidationFailed,
)
from loyalty_service.db import storage_errors
from loyalty_service.models import (
    Balance, Order, OrderStatus, TransactionKind, User, Withdrawal, utcnow,
)

logger = logging.getLogger(__name__)

PENDING_STATUSES = (OrderStatus.NEW.value, OrderStatus.PROCESSING.value)

class UserRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, login: str, password_hash: str) -> User:
        user = User(login=login, password_hash=password_hash, created_at=utcnow())
        with storage_errors("create user"), self.session_factory() as db:
            try:
                with db.begin():
                    db.add(user)
            except IntegrityError:
                raise LoginTakenError(login)
        return user

    def get_by_login(self, login: str) -> User:
        with storage_errors("get user by login"), self.session_factory() as db:
            user = db.scalars(select(User).where(User.login == login)).first()
        if user is None:
            raise NotFoundError(f"user {login!r} not found", field="login")
        return user

class OrderRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, order_id: str, owner_id: int) -> Order:
        order = Order(
            id=order_id,
            user_id=owner_id,
            status=OrderStatus.NEW.value,
            accrual=Decimal("0"),
            uploaded_at=utcnow(),
        )
        with storage_errors("create order"), self.session_factory() as db:
            try:
                with db.begin():
                    db.add(order)
            except IntegrityError as e:
                # lost a race with another submission of the same number
                exists, existing_owner = self.check_exists(order_id)
                if not exists:
                    raise StorageError("failed to create order", original_error=e) from e
                raise OrderConflictError(order_id, existing_owner)
        return order

    def check_exists(self, order_id: str) -> Tuple[bool, Optional[int]]:
        """Look the number up in both ledgers that share the order id space."""
        with storage_errors("check order existence"), self.session_factory() as db:
            owner_id = db.scalar(select(Order.user_id).where(Order.id == order_id))
            if owner_id is None:
                owner_id = db.scalar(select(Withdrawal.user_id).where(Withdrawal.order_id == order_id))
        return owner_id is not None, owner_id

    def get_by_id(self, order_id: str) -> Order:
        with storage_errors("get order by id"), self.session_factory() as db:
            order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found", field="order")
        return order

    def get_by_owner(self, owner_id: int) -> List[Order]:
        with storage_errors("list orders"), self.session_factory() as db:
            stmt = select(Order).where(Order.user_id == owner_id).order_by(Order.uploaded_at.desc())
            return list(db.scalars(stmt))

    def update(self, order: Order) -> None:
        with storage_errors("update order"), self.session_factory() as db:
            with db.begin():
                stored = db.get(Order, order.id)
                if stored is None:
                    raise NotFoundError(f"order {order.id} not found", field="order")
                stored.status = order.status
                stored.accrual = order.accrual

    def list_pending(self, limit: int) -> List[Order]:
        """Orders the accrual system has not finalized yet, oldest first."""
        with storage_errors("list pending orders"), self.session_factory() as db:
            stmt = (
                select(Order)
                .where(Order.status.in_(PENDING_STATUSES))
                .order_by(Order.uploaded_at.asc())
                .limit(limit)
            )
            return list(db.scalars(stmt))

    @staticmethod
    def lock(db: Session, order_id: str) -> Order:
        order = db.scalars(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if order is None:
            raise NotFoundError(f"order {order_id} not found", field="order")
        return order

class BalanceRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_or_create(self, owner_id: int) -> Balance:
        with storage_errors("get balance"), self.session_factory() as db:
            with db.begin():
                return self._ensure_row(db, owner_id)

    def apply_transaction(
        self,
        owner_id: int,
        amount: Decimal,
        kind: TransactionKind,
        session: Optional[Session] = None,
    ) -> Balance:
        """Credit or debit a balance under a row lock.

        Lock, read, validate, write and commit happen in one transaction, so
        two debits for the same user cannot both see the same funds. An
        InsufficientFundsError rolls the whole transaction back. With
        ``session`` the change joins the caller's transaction instead.
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationFailed("amount must be positive", field="sum", context={"amount": str(amount)})

        if session is not None:
            return self._apply(session, owner_id, amount, kind)

        with storage_errors(f"apply {kind.value.lower()} to balance"), self.session_factory() as db:
            with db.begin():
                balance = self._apply(db, owner_id, amount, kind)
        logger.info(f"💰 {kind.value} {amount} for user {owner_id}: current={balance.current} withdrawn={balance.withdrawn}")
        return balance

    def _apply(self, db: Session, owner_id: int, amount: Decimal, kind: TransactionKind) -> Balance:
        self._ensure_row(db, owner_id)
        balance = db.scalars(
            select(Balance)
            .where(Balance.user_id == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one()

        if kind is TransactionKind.DEBIT:
            if balance.current < amount:
                raise InsufficientFundsError(owner_id, required=amount, available=balance.current)
            balance.current -= amount
            balance.withdrawn += amount
        else:
            balance.current += amount
        balance.updated_at = utcnow()
        db.flush()
        return balance

    @staticmethod
    def _ensure_row(db: Session, owner_id: int) -> Balance:
        balance = db.get(Balance, owner_id)
        if balance is not None:
            return balance
        try:
            with db.begin_nested():
                balance = Balance(user_id=owner_id, current=Decimal("0"), withdrawn=Decimal("0"), updated_at=utcnow())
                db.add(balance)
        except IntegrityError:
            # created concurrently by another transaction
            balance = db.get(Balance, owner_id)
        return balance

class WithdrawalRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, owner_id: int, order_id: str, amount: Decimal) -> Withdrawal:
        withdrawal = Withdrawal(user_id=owner_id, order_id=order_id, sum=amount, processed_at=utcnow())
        with storage_errors("create withdrawal"), self.session_factory() as db:
            try:
                with db.begin():
                    db.add(withdrawal)
            except IntegrityError:
                raise OrderConflictError(order_id, owner_id)
        return withdrawal

    def get_by_owner(self, owner_id: int) -> List[Withdrawal]:
        with storage_errors("list withdrawals"), self.session_factory() as db:
            stmt = (
                select(Withdrawal)
                .where(Withdrawal.user_id == owner_id)
                .order_by(Withdrawal.processed_at.desc(), Withdrawal.id.desc())
            )
            return list(db.scalars(stmt))
