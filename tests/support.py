"""Shared fixtures for the test suites: a throwaway SQLite-backed stack."""
import os
import shutil
import tempfile
from types import SimpleNamespace
from loyalty_service.db import init_db, make_engine, make_session_factory
from loyalty_service.repositories import (
    BalanceRepository, OrderRepository, UserRepository, WithdrawalRepository,
)
from loyalty_service.services import BalanceService, OrderService, UserService

# numbers that pass the Luhn check
VALID_NUMBERS = ["79927398713", "12345678903", "4561261212345467", "2377225624", "9278923470", "346436439"]

def build_stack():
    workdir = tempfile.mkdtemp(prefix="loyalty-test-")
    engine = make_engine(f"sqlite:///{os.path.join(workdir, 'loyalty.db')}")
    init_db(engine)
    session_factory = make_session_factory(engine)

    stack = SimpleNamespace(workdir=workdir, engine=engine, session_factory=session_factory)
    stack.users = UserRepository(session_factory)
    stack.orders = OrderRepository(session_factory)
    stack.balances = BalanceRepository(session_factory)
    stack.withdrawals = WithdrawalRepository(session_factory)
    stack.user_service = UserService(stack.users)
    stack.order_service = OrderService(session_factory, stack.orders, stack.balances)
    stack.balance_service = BalanceService(stack.balances, stack.withdrawals, stack.orders)
    return stack

def teardown_stack(stack):
    stack.engine.dispose()
    shutil.rmtree(stack.workdir, ignore_errors=True)
