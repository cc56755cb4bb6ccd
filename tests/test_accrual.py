"""
Tests for the accrual system client and the background reconciler
"""
import json
import time
import unittest
from decimal import Decimal
from unittest import mock
import requests
from common.error_handling import OracleRateLimitedError, StorageError, TransientOracleError
from common.tracing import trace_headers
from loyalty_service.accrual import (
    AccrualClient, AccrualReconciler, AccrualResult, parse_retry_after,
)
from loyalty_service.models import OrderStatus
from support import build_stack, teardown_stack


def fake_response(status_code, body=None, headers=None):
    response = mock.Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = json.dumps(body).encode("utf-8") if body is not None else b""
    return response


class FakeClient:
    """Stands in for AccrualClient; answers come from a per-order script."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []
        self.headers = []

    def fetch(self, order_id):
        self.calls.append(order_id)
        self.headers.append(trace_headers())
        answer = self.answers[order_id]
        if isinstance(answer, Exception):
            raise answer
        return answer


class TestParseRetryAfter(unittest.TestCase):

    def test_values(self):
        self.assertEqual(parse_retry_after("60"), 60.0)
        self.assertEqual(parse_retry_after(" 2.5 "), 2.5)
        self.assertIsNone(parse_retry_after(None))
        self.assertIsNone(parse_retry_after(""))
        self.assertIsNone(parse_retry_after("soon"))
        self.assertIsNone(parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT"))
        self.assertIsNone(parse_retry_after("-1"))


class TestAccrualClient(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.client = AccrualClient("http://accrual:8081/", timeout=3, session=self.session)

    def test_processed(self):
        self.session.get.return_value = fake_response(
            200, {"order": "79927398713", "status": "PROCESSED", "accrual": 500})
        result = self.client.fetch("79927398713")

        self.assertEqual(result, AccrualResult("79927398713", OrderStatus.PROCESSED, Decimal("500")))
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://accrual:8081/api/orders/79927398713")
        self.assertEqual(kwargs["timeout"], 3)

    def test_registered_maps_to_processing(self):
        self.session.get.return_value = fake_response(200, {"order": "18", "status": "REGISTERED"})
        result = self.client.fetch("18")
        self.assertEqual(result.status, OrderStatus.PROCESSING)
        self.assertEqual(result.accrual, Decimal("0"))

    def test_no_content_is_invalid(self):
        self.session.get.return_value = fake_response(204)
        self.assertEqual(self.client.fetch("18"), AccrualResult("18", OrderStatus.INVALID, Decimal("0")))

    def test_rate_limited(self):
        self.session.get.return_value = fake_response(429, headers={"Retry-After": "7"})
        with self.assertRaises(OracleRateLimitedError) as ctx:
            self.client.fetch("18")
        self.assertEqual(ctx.exception.retry_after, 7.0)

    def test_rate_limited_without_header(self):
        self.session.get.return_value = fake_response(429)
        with self.assertRaises(OracleRateLimitedError) as ctx:
            self.client.fetch("18")
        self.assertIsNone(ctx.exception.retry_after)

    def test_server_error_is_transient(self):
        self.session.get.return_value = fake_response(500)
        with self.assertRaises(TransientOracleError):
            self.client.fetch("18")

    def test_transport_error_is_transient(self):
        self.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransientOracleError) as ctx:
            self.client.fetch("18")
        self.assertIsInstance(ctx.exception.original_error, requests.ConnectionError)

    def test_garbage_body_is_transient(self):
        response = fake_response(200)
        response.content = b"<html>oops</html>"
        self.session.get.return_value = response
        with self.assertRaises(TransientOracleError):
            self.client.fetch("18")

    def test_unknown_status_is_transient(self):
        self.session.get.return_value = fake_response(200, {"order": "18", "status": "LOST"})
        with self.assertRaises(TransientOracleError):
            self.client.fetch("18")


class TestReconciler(unittest.TestCase):

    def setUp(self):
        self.stack = build_stack()
        self.alice = self.stack.users.create("alice", "x").id
        for number in ["18", "26", "34"]:
            self.stack.order_service.upload_order(number, self.alice)
            time.sleep(0.01)

    def tearDown(self):
        teardown_stack(self.stack)

    def reconciler(self, answers, **kwargs):
        self.client = FakeClient(answers)
        return AccrualReconciler(self.stack.orders, self.stack.order_service, self.client, **kwargs)

    def status(self, number):
        return self.stack.orders.get_by_id(number).status

    def balance(self):
        return self.stack.balances.get_or_create(self.alice).current

    def test_tick_applies_answers(self):
        reconciler = self.reconciler({
            "18": AccrualResult("18", OrderStatus.PROCESSED, Decimal("500")),
            "26": AccrualResult("26", OrderStatus.INVALID, Decimal("0")),
            "34": AccrualResult("34", OrderStatus.PROCESSING, Decimal("0")),
        })
        report = reconciler.run_once()

        self.assertEqual((report.checked, report.updated, report.credited, report.skipped), (3, 3, 1, 0))
        self.assertEqual([self.status(n) for n in ["18", "26", "34"]], ["PROCESSED", "INVALID", "PROCESSING"])
        self.assertEqual(self.balance(), Decimal("500"))

        # only the PROCESSING order is polled again
        self.client.calls.clear()
        reconciler.run_once()
        self.assertEqual(self.client.calls, ["34"])

    def test_processing_to_processed_credits_exactly_once(self):
        self.stack.order_service.apply_accrual("18", OrderStatus.PROCESSING, None)
        answers = {
            "18": AccrualResult("18", OrderStatus.PROCESSED, Decimal("500")),
            "26": TransientOracleError("26", "down"),
            "34": TransientOracleError("34", "down"),
        }
        reconciler = self.reconciler(answers)
        reconciler.run_once()
        reconciler.run_once()

        order = self.stack.orders.get_by_id("18")
        self.assertEqual(order.status, "PROCESSED")
        self.assertEqual(order.accrual, Decimal("500"))
        self.assertEqual(self.balance(), Decimal("500"))

    def test_unchanged_status_is_not_written(self):
        reconciler = self.reconciler({n: AccrualResult(n, OrderStatus.NEW, Decimal("0")) for n in ["18", "26", "34"]})
        report = reconciler.run_once()
        self.assertEqual(report.updated, 0)
        self.assertEqual(self.status("18"), "NEW")

    def test_failures_are_isolated(self):
        reconciler = self.reconciler({
            "18": TransientOracleError("18", "unexpected status code 500"),
            "26": AccrualResult("26", OrderStatus.PROCESSED, Decimal("10")),
            "34": TransientOracleError("34", "request failed"),
        })
        report = reconciler.run_once()

        self.assertEqual(report.skipped, 2)
        self.assertEqual(report.updated, 1)
        self.assertEqual(self.status("18"), "NEW")
        self.assertEqual(self.status("26"), "PROCESSED")
        self.assertEqual(self.balance(), Decimal("10"))

    def test_storage_failure_for_one_order_does_not_stop_tick(self):
        reconciler = self.reconciler({n: AccrualResult(n, OrderStatus.PROCESSED, Decimal("1")) for n in ["18", "26", "34"]})
        original = self.stack.order_service.apply_accrual

        def flaky(order_id, status, accrual):
            if order_id == "26":
                raise StorageError("failed to apply accrual")
            return original(order_id, status, accrual)

        with mock.patch.object(self.stack.order_service, "apply_accrual", side_effect=flaky):
            report = reconciler.run_once()

        self.assertEqual(report.skipped, 1)
        self.assertEqual(self.status("18"), "PROCESSED")
        self.assertEqual(self.status("26"), "NEW")
        self.assertEqual(self.status("34"), "PROCESSED")

    def test_rate_limit_pauses_then_continues(self):
        reconciler = self.reconciler({
            "18": OracleRateLimitedError("18", 0.2),
            "26": AccrualResult("26", OrderStatus.PROCESSED, Decimal("5")),
            "34": OracleRateLimitedError("34", None),
        })
        started = time.monotonic()
        report = reconciler.run_once()
        elapsed = time.monotonic() - started

        self.assertGreaterEqual(elapsed, 0.2)
        self.assertEqual(self.client.calls, ["18", "26", "34"])
        self.assertEqual(report.skipped, 2)
        self.assertEqual(self.status("18"), "NEW")
        self.assertEqual(self.status("26"), "PROCESSED")

    def test_stop_abandons_tick_between_orders(self):
        reconciler = self.reconciler({
            "18": OracleRateLimitedError("18", 30),
            "26": AccrualResult("26", OrderStatus.PROCESSED, Decimal("5")),
            "34": AccrualResult("34", OrderStatus.PROCESSED, Decimal("5")),
        })
        reconciler.stop()
        report = reconciler.run_once()
        self.assertTrue(report.aborted)
        self.assertEqual(self.client.calls, [])

    def test_background_loop_lifecycle(self):
        reconciler = self.reconciler(
            {n: AccrualResult(n, OrderStatus.PROCESSED, Decimal("1")) for n in ["18", "26", "34"]},
            poll_interval=0.05,
        )
        reconciler.start()
        self.assertTrue(reconciler.is_running)

        deadline = time.monotonic() + 5
        while self.balance() < Decimal("3") and time.monotonic() < deadline:
            time.sleep(0.05)

        reconciler.stop()
        self.assertTrue(reconciler.join(timeout=5))
        self.assertFalse(reconciler.is_running)
        self.assertEqual(self.balance(), Decimal("3"))

    def test_join_without_start(self):
        self.assertTrue(self.reconciler({}).join(timeout=0))

    def test_each_order_is_traced_within_the_tick(self):
        reconciler = self.reconciler({
            "18": AccrualResult("18", OrderStatus.PROCESSED, Decimal("500")),
            "26": TransientOracleError("26", "down"),
            "34": AccrualResult("34", OrderStatus.NEW, Decimal("0")),
        })
        with self.assertLogs("common.tracing", level="INFO") as logs:
            reconciler.run_once()

        spans = [json.loads(line.split("TRACE: ", 1)[1]) for line in logs.output]
        tick = next(s for s in spans if s["operation"] == "accrual.tick")
        per_order = {s["tags"]["order_id"]: s for s in spans if s["operation"] == "accrual.order"}

        self.assertEqual(set(per_order), {"18", "26", "34"})
        for span in per_order.values():
            self.assertEqual(span["trace_id"], tick["trace_id"])
            self.assertEqual(span["parent_id"], tick["span_id"])
        self.assertEqual(per_order["18"]["tags"]["outcome"], "updated")
        self.assertEqual(per_order["18"]["tags"]["credited"], "500")
        self.assertEqual(per_order["26"]["tags"]["outcome"], "unavailable")
        self.assertEqual(per_order["34"]["tags"]["outcome"], "unchanged")
        self.assertEqual(tick["tags"]["credited"], 1)

        # calls to the accrual system carry the order's span
        self.assertEqual(
            [h["X-Span-ID"] for h in self.client.headers],
            [per_order[n]["span_id"] for n in ["18", "26", "34"]],
        )
        self.assertTrue(all(h["X-Trace-ID"] == tick["trace_id"] for h in self.client.headers))
