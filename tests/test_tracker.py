"""Tests for DeliveryTracker."""

from __future__ import annotations

import asyncio

from webhook_balancer.proxy import DeliveryKey, DeliveryTracker
from tests.conftest import run_async


def key(n: int, retry: str = "0") -> DeliveryKey:
    return DeliveryKey(f"v0=sig{n}", "1700000000", retry)


class TestDeliveryKey:

    def test_missing_parts_give_no_key(self):
        assert DeliveryKey.from_values(None, "1700000000") is None
        assert DeliveryKey.from_values("v0=abc", "") is None

    def test_retry_defaults_to_zero(self):
        assert DeliveryKey.from_values("v0=abc", "1") == DeliveryKey("v0=abc", "1", "0")

    def test_retry_number_distinguishes_deliveries(self):
        assert key(1, "0") != key(1, "1")


class TestDeliveryTracker:

    def test_first_seen_then_duplicate(self):
        tracker = DeliveryTracker()

        async def do_test():
            assert not await tracker.check_and_record(key(1), now=100.0)
            assert await tracker.check_and_record(key(1), now=101.0)
            assert not await tracker.check_and_record(key(1, "1"), now=101.0)

        run_async(do_test())
        assert tracker.duplicates == 1
        assert len(tracker) == 2

    def test_window_expiry(self):
        tracker = DeliveryTracker(window_seconds=60)

        async def do_test():
            await tracker.check_and_record(key(1), now=0.0)
            assert await tracker.check_and_record(key(1), now=59.0)
            # a duplicate does not refresh the timestamp
            assert not await tracker.check_and_record(key(1), now=61.0)

        run_async(do_test())

    def test_forget(self):
        tracker = DeliveryTracker()

        async def do_test():
            await tracker.check_and_record(key(1))
            await tracker.forget(key(1))
            await tracker.forget(key(2))
            return await tracker.check_and_record(key(1))

        assert run_async(do_test()) is False

    def test_overflow_keeps_newest_half(self):
        tracker = DeliveryTracker(max_entries=10)

        async def do_test():
            for n in range(11):
                await tracker.check_and_record(key(n), now=float(n))
            assert len(tracker) == 5
            # newest five survive
            for n in range(6, 11):
                assert await tracker.check_and_record(key(n), now=20.0)
            assert not await tracker.check_and_record(key(0), now=20.0)

        run_async(do_test())

    def test_concurrent_identical_deliveries_forward_once(self):
        tracker = DeliveryTracker()

        async def do_test():
            results = await asyncio.gather(*[tracker.check_and_record(key(7)) for _ in range(20)])
            return results

        results = run_async(do_test())
        assert results.count(False) == 1
        assert tracker.duplicates == 19

    def test_status(self):
        tracker = DeliveryTracker(max_entries=5, window_seconds=30)
        assert tracker.get_status() == {
            "tracked": 0,
            "max_entries": 5,
            "window_seconds": 30,
            "duplicates": 0,
        }
