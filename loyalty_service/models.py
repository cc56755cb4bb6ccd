from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import declarative_base

Base = declarative_base()

MONEY = Numeric(12, 2)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class OrderStatus(str, Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

# NEW may skip PROCESSING when the accrual system answers with a final status straight away
ALLOWED_TRANSITIONS = {
    OrderStatus.NEW: {OrderStatus.PROCESSING, OrderStatus.INVALID, OrderStatus.PROCESSED},
    OrderStatus.PROCESSING: {OrderStatus.INVALID, OrderStatus.PROCESSED},
    OrderStatus.INVALID: set(),
    OrderStatus.PROCESSED: set(),
}

def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]

class TransactionKind(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    login = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=OrderStatus.NEW.value, index=True)
    accrual = Column(MONEY, nullable=False, default=Decimal("0"))
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

class Balance(Base):
    __tablename__ = "balances"
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    current = Column(MONEY, nullable=False, default=Decimal("0"))
    withdrawn = Column(MONEY, nullable=False, default=Decimal("0"))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String(64), unique=True, nullable=False)
    sum = Column(MONEY, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
