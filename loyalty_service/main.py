import logging
import jwt
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Depends, Header, Request, Response, Cookie, status
from fastapi.concurrency import run_in_threadpool
from common.error_handling import UnauthorizedError, ValidationFailed, add_error_handlers
from common.schemas import BalanceOut, Credentials, OrderOut, WithdrawalOut, WithdrawRequest
from common.security import mint_user_jwt, verify_token
from common.settings import Settings, settings as default_settings
from common.tracing import api_tracer, tracing_middleware
from loyalty_service.accrual import AccrualClient, AccrualReconciler
from loyalty_service.db import init_db, make_engine, make_session_factory
from loyalty_service.repositories import (
    BalanceRepository, OrderRepository, UserRepository, WithdrawalRepository,
)
from loyalty_service.services import BalanceService, OrderService, UploadResult, UserService

logger = logging.getLogger(__name__)

SESSION_COOKIE = "token"

def create_app(settings: Settings = default_settings) -> FastAPI:
    logging.basicConfig(level=settings.log_level)

    engine = make_engine(settings.database_uri)
    init_db(engine)
    session_factory = make_session_factory(engine)

    users = UserRepository(session_factory)
    orders = OrderRepository(session_factory)
    balances = BalanceRepository(session_factory)
    withdrawals = WithdrawalRepository(session_factory)

    user_service = UserService(users)
    order_service = OrderService(session_factory, orders, balances)
    balance_service = BalanceService(balances, withdrawals, orders)
    reconciler = AccrualReconciler(
        orders,
        order_service,
        AccrualClient(settings.accrual_system_address, timeout=settings.accrual_request_timeout),
        poll_interval=settings.accrual_poll_interval,
        batch_size=settings.accrual_batch_size,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.accrual_enabled:
            reconciler.start()
        yield
        reconciler.stop()
        if not await run_in_threadpool(reconciler.join, settings.shutdown_grace_seconds):
            logger.warning("Accrual reconciler did not stop within the grace period")
        engine.dispose()

    app = FastAPI(title="Loyalty Service", lifespan=lifespan)
    app.state.reconciler = reconciler
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, api_tracer)

    async def current_user(
        token: Optional[str] = Cookie(None),
        authorization: Optional[str] = Header(None),
    ) -> int:
        if not token and authorization and authorization.startswith("Bearer "):
            token = authorization.split(" ", 1)[1]
        if not token:
            raise UnauthorizedError("missing session token")
        try:
            claims = verify_token(token, settings=settings)
            return int(claims["sub"])
        except (jwt.InvalidTokenError, KeyError, ValueError) as e:
            raise UnauthorizedError(f"invalid session token: {e}")

    def issue_session(response: Response, user_id: int) -> None:
        token = mint_user_jwt(user_id, settings=settings)
        response.set_cookie(SESSION_COOKIE, token, httponly=True, max_age=settings.jwt_ttl_seconds, path="/")
        response.headers["Authorization"] = f"Bearer {token}"

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "loyalty", "reconciler": reconciler.is_running}

    @app.post("/api/user/register")
    def register(creds: Credentials, response: Response):
        user = user_service.register(creds.login, creds.password)
        issue_session(response, user.id)
        return {"ok": True}

    @app.post("/api/user/login")
    def login(creds: Credentials, response: Response):
        user = user_service.authenticate(creds.login, creds.password)
        issue_session(response, user.id)
        return {"ok": True}

    @app.post("/api/user/orders")
    async def upload_order(request: Request, user_id: int = Depends(current_user)):
        """Order number arrives as the raw request body."""
        order_id = (await request.body()).decode("utf-8", errors="replace").strip()
        if not order_id:
            raise ValidationFailed("order number is required", field="order")

        result = await run_in_threadpool(order_service.upload_order, order_id, user_id)
        if result is UploadResult.ALREADY_UPLOADED:
            return Response(status_code=status.HTTP_200_OK)
        return Response(status_code=status.HTTP_202_ACCEPTED)

    @app.get("/api/user/orders")
    def list_orders(user_id: int = Depends(current_user)):
        orders = order_service.get_user_orders(user_id)
        if not orders:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return [
            OrderOut(
                number=o.id,
                status=o.status,
                accrual=o.accrual if o.accrual else None,
                uploaded_at=o.uploaded_at,
            ).model_dump(mode="json", exclude_none=True)
            for o in orders
        ]

    @app.get("/api/user/balance")
    def get_balance(user_id: int = Depends(current_user)):
        balance = balance_service.get_user_balance(user_id)
        return BalanceOut(current=balance.current, withdrawn=balance.withdrawn).model_dump(mode="json")

    @app.post("/api/user/balance/withdraw")
    def withdraw(req: WithdrawRequest, user_id: int = Depends(current_user)):
        balance_service.withdraw(user_id, req.order, req.sum)
        return {"ok": True}

    @app.get("/api/user/withdrawals")
    def list_withdrawals(user_id: int = Depends(current_user)):
        withdrawals = balance_service.get_user_withdrawals(user_id)
        if not withdrawals:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return [
            WithdrawalOut(order=w.order_id, sum=w.sum, processed_at=w.processed_at).model_dump(mode="json")
            for w in withdrawals
        ]

    return app

def run() -> None:
    import uvicorn
    uvicorn.run(
        create_app(default_settings),
        host=default_settings.host,
        port=default_settings.port,
        timeout_graceful_shutdown=default_settings.shutdown_grace_seconds,
    )

if __name__ == "__main__":
    run()
