import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from sqlalchemy.orm import sessionmaker
from common.error_handling import (
    InvalidCredentialsError, NotFoundError, OrderConflictError,
)
from common.security import check_password, hash_password
from loyalty_service.db import storage_errors
from loyalty_service.luhn import ensure_valid_order_number
from loyalty_service.models import (
    Balance, Order, OrderStatus, TransactionKind, User, Withdrawal, can_transition,
)
from loyalty_service.repositories import (
    BalanceRepository, OrderRepository, UserRepository, WithdrawalRepository,
)

logger = logging.getLogger(__name__)

class UploadResult(Enum):
    ACCEPTED = "accepted"
    ALREADY_UPLOADED = "already_uploaded"

@dataclass
class AccrualOutcome:
    updated: bool
    credited: Decimal = Decimal("0")

class UserService:
    def __init__(self, users: UserRepository):
        self.users = users

    def register(self, login: str, password: str) -> User:
        user = self.users.create(login, hash_password(password))
        logger.info(f"👤 Registered user {user.id} ({login})")
        return user

    def authenticate(self, login: str, password: str) -> User:
        try:
            user = self.users.get_by_login(login)
        except NotFoundError:
            raise InvalidCredentialsError()
        if not check_password(password, user.password_hash):
            raise InvalidCredentialsError()
        return user

class OrderService:
    def __init__(self, session_factory: sessionmaker, orders: OrderRepository, balances: BalanceRepository):
        self.session_factory = session_factory
        self.orders = orders
        self.balances = balances

    def upload_order(self, order_id: str, user_id: int) -> UploadResult:
        ensure_valid_order_number(order_id)

        exists, owner_id = self.orders.check_exists(order_id)
        if exists:
            if owner_id == user_id:
                return UploadResult.ALREADY_UPLOADED
            raise OrderConflictError(order_id, owner_id)

        self.orders.create(order_id, user_id)
        logger.info(f"📦 Order {order_id} uploaded by user {user_id}")
        return UploadResult.ACCEPTED

    def get_user_orders(self, user_id: int) -> List[Order]:
        return self.orders.get_by_owner(user_id)

    def apply_accrual(self, order_id: str, status: OrderStatus, accrual: Optional[Decimal]) -> AccrualOutcome:
        """Move an order to the status reported by the accrual system.

        The order row is locked and the owner's balance credited in the same
        transaction, so replaying the same answer never credits twice: the
        second run finds the order already in its final status.
        """
        accrual = Decimal(str(accrual)) if accrual is not None else Decimal("0")
        if accrual < 0:
            accrual = Decimal("0")

        with storage_errors(f"apply accrual to order {order_id}"), self.session_factory() as db:
            with db.begin():
                order = self.orders.lock(db, order_id)
                current = OrderStatus(order.status)
                if current == status or not can_transition(current, status):
                    return AccrualOutcome(updated=False)

                order.status = status.value
                order.accrual = accrual if status == OrderStatus.PROCESSED else Decimal("0")

                credited = Decimal("0")
                if status == OrderStatus.PROCESSED and accrual > 0:
                    self.balances.apply_transaction(order.user_id, accrual, TransactionKind.CREDIT, session=db)
                    credited = accrual

        logger.info(f"🔄 Order {order_id}: {current.value} -> {status.value}, credited {credited}")
        return AccrualOutcome(updated=True, credited=credited)

class BalanceService:
    def __init__(self, balances: BalanceRepository, withdrawals: WithdrawalRepository, orders: OrderRepository):
        self.balances = balances
        self.withdrawals = withdrawals
        self.orders = orders

    def get_user_balance(self, user_id: int) -> Balance:
        return self.balances.get_or_create(user_id)

    def withdraw(self, user_id: int, order_id: str, amount: Decimal) -> Withdrawal:
        ensure_valid_order_number(order_id)

        # withdrawals and orders share one number space
        exists, owner_id = self.orders.check_exists(order_id)
        if exists:
            raise OrderConflictError(order_id, owner_id)

        self.balances.apply_transaction(user_id, amount, TransactionKind.DEBIT)

        # TODO: record the withdrawal in the debit transaction (or key it by
        # order number) so a failure here cannot leave a debit without a record
        try:
            return self.withdrawals.create(user_id, order_id, amount)
        except Exception:
            logger.error(
                f"❌ Balance of user {user_id} debited by {amount} but withdrawal {order_id} was not recorded",
                exc_info=True,
            )
            raise

    def get_user_withdrawals(self, user_id: int) -> List[Withdrawal]:
        return self.withdrawals.get_by_owner(user_id)
