"""
Tests for the token bucket that paces every outbound request.

Run:
    python -m pytest tests/test_ratelimit.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from autebook import ratelimit
from autebook.ratelimit import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class TestTryAcquire(unittest.TestCase):

    def test_burst_then_empty(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, burst=3, clock=clock)
        self.assertTrue(bucket.try_acquire())
        self.assertTrue(bucket.try_acquire())
        self.assertTrue(bucket.try_acquire())
        self.assertFalse(bucket.try_acquire())

    def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, burst=1, clock=clock)
        self.assertTrue(bucket.try_acquire())
        clock.now += 0.25
        self.assertFalse(bucket.try_acquire())
        clock.now += 0.25
        self.assertTrue(bucket.try_acquire())

    def test_never_exceeds_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=10, burst=2, clock=clock)
        clock.now += 3600
        taken = sum(bucket.try_acquire() for _ in range(5))
        self.assertEqual(taken, 2)

    def test_invalid_parameters(self):
        with self.assertRaises(ValueError):
            TokenBucket(rate=0)
        with self.assertRaises(ValueError):
            TokenBucket(rate=1, burst=0)


class TestAcquire(unittest.IsolatedAsyncioTestCase):

    async def test_waits_for_next_token(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, burst=1, clock=clock)
        with patch.object(ratelimit.asyncio, "sleep", clock.sleep):
            for _ in range(3):
                await bucket.acquire()
        self.assertEqual(clock.sleeps, [0.5, 0.5])
        self.assertAlmostEqual(clock.now, 101.0)

    async def test_no_wait_within_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1, burst=4, clock=clock)
        with patch.object(ratelimit.asyncio, "sleep", clock.sleep):
            for _ in range(4):
                await bucket.acquire()
        self.assertEqual(clock.sleeps, [])


if __name__ == "__main__":
    unittest.main()
