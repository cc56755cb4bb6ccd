"""
Accrual reconciliation.

AccrualClient talks to the external accrual system. AccrualReconciler is a
background thread that, every poll interval, walks the orders that are not
final yet, asks the accrual system about each one in turn and applies the
answer through OrderService.apply_accrual.
"""
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import requests
from pydantic import ValidationError
from common.error_handling import (
    LoyaltyError, OracleRateLimitedError, TransientOracleError,
)
from common.schemas import AccrualResponse
from common.tracing import TraceSpan, accrual_tracer, trace_headers
from loyalty_service.models import OrderStatus
from loyalty_service.repositories import OrderRepository
from loyalty_service.services import OrderService

logger = logging.getLogger(__name__)

# the accrual system's vocabulary differs slightly from ours
ORACLE_STATUS_MAP = {
    "REGISTERED": OrderStatus.PROCESSING,
    "PROCESSING": OrderStatus.PROCESSING,
    "INVALID": OrderStatus.INVALID,
    "PROCESSED": OrderStatus.PROCESSED,
}

@dataclass
class AccrualResult:
    order: str
    status: OrderStatus
    accrual: Decimal

@dataclass
class TickReport:
    checked: int = 0
    updated: int = 0
    credited: int = 0
    skipped: int = 0
    aborted: bool = False

def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header, or None if absent or unparseable."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds

class AccrualClient:
    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, order_id: str) -> AccrualResult:
        url = f"{self.base_url}/api/orders/{order_id}"
        try:
            response = self.session.get(url, timeout=self.timeout, headers=trace_headers())
        except requests.RequestException as e:
            raise TransientOracleError(order_id, f"request failed: {e}", original_error=e) from e

        if response.status_code == 204:
            return AccrualResult(order=order_id, status=OrderStatus.INVALID, accrual=Decimal("0"))

        if response.status_code == 429:
            raise OracleRateLimitedError(order_id, parse_retry_after(response.headers.get("Retry-After")))

        if response.status_code != 200:
            raise TransientOracleError(order_id, f"unexpected status code {response.status_code}")

        try:
            body = AccrualResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise TransientOracleError(order_id, "unparseable response body", original_error=e) from e

        status = ORACLE_STATUS_MAP.get(body.status.upper())
        if status is None:
            raise TransientOracleError(order_id, f"unknown status {body.status!r}")

        return AccrualResult(order=body.order, status=status, accrual=body.accrual or Decimal("0"))

class AccrualReconciler:
    def __init__(
        self,
        orders: OrderRepository,
        order_service: OrderService,
        client: AccrualClient,
        poll_interval: float = 60.0,
        batch_size: int = 100,
    ):
        self.orders = orders
        self.order_service = order_service
        self.client = client
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="accrual-reconciler", daemon=True)
        self._thread.start()
        logger.info(f"🚀 Accrual reconciler started (interval {self.poll_interval}s, batch {self.batch_size})")

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit; returns True once it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.run_once()
            except Exception:
                # the loop outlives any single tick
                logger.exception("Accrual tick failed")
        logger.info("🛑 Accrual reconciler stopped")

    def run_once(self) -> TickReport:
        report = TickReport()
        with accrual_tracer.span("accrual.tick") as span:
            pending = self.orders.list_pending(self.batch_size)
            span.tag(pending=len(pending))

            for order in pending:
                if self._stop_event.is_set():
                    report.aborted = True
                    break
                report.checked += 1
                with accrual_tracer.span("accrual.order") as order_span:
                    order_span.tag(order_id=order.id)
                    self._reconcile(order.id, report, order_span)

            span.tag(updated=report.updated, credited=report.credited, skipped=report.skipped)

        if report.checked:
            logger.info(
                f"Accrual tick: checked={report.checked} updated={report.updated} "
                f"credited={report.credited} skipped={report.skipped}"
            )
        return report

    def _reconcile(self, order_id: str, report: TickReport, span: TraceSpan) -> None:
        try:
            result = self.client.fetch(order_id)
        except OracleRateLimitedError as e:
            report.skipped += 1
            span.tag(outcome="rate_limited", retry_after=e.retry_after)
            if e.retry_after is None:
                logger.warning("⏳ Accrual system rate limited us without a usable Retry-After")
            else:
                logger.warning(f"⏳ Accrual system rate limited us, pausing {e.retry_after}s")
                self._stop_event.wait(e.retry_after)
            return
        except TransientOracleError as e:
            report.skipped += 1
            span.tag(outcome="unavailable")
            logger.warning(e.message)
            return

        span.tag(oracle_status=result.status.value)
        try:
            outcome = self.order_service.apply_accrual(order_id, result.status, result.accrual)
        except LoyaltyError as e:
            report.skipped += 1
            span.fail(e).tag(outcome="apply_failed")
            logger.error(f"Failed to apply accrual for order {order_id}: {e.message}")
            return

        span.tag(outcome="updated" if outcome.updated else "unchanged", credited=outcome.credited)
        if outcome.updated:
            report.updated += 1
        if outcome.credited > 0:
            report.credited += 1
