#!/usr/bin/env python3
"""
Unit tests for the credential cache.

Covers reuse within the TTL, refresh on expiry, single-flight refresh under
concurrency and the handling of failed refreshes.
"""

import os
import sys
import time
import threading
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync import credentials as credentials_module
from identity_sync.credentials import CredentialCache
from identity_sync.exceptions import CredentialUnavailable
from identity_sync.models import Credential


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_credential(token='123456', issued_at=1000.0, ttl=60):
    return Credential(access_token=token, token_type='Bearer', issued_at=issued_at, ttl_seconds=ttl)


class TestCredentialCache(unittest.TestCase):
    """Test cases for CredentialCache."""

    def setUp(self):
        self.clock = FakeClock()
        self.issuer = Mock(side_effect=lambda: make_credential(issued_at=self.clock.now))
        self.cache = CredentialCache(self.issuer, clock=self.clock)

    def test_first_acquire_refreshes_once(self):
        credential = self.cache.acquire()

        self.assertEqual(credential.access_token, '123456')
        self.assertEqual(credential.authorization, 'Bearer 123456')
        self.assertEqual(self.issuer.call_count, 1)
        self.assertIs(self.cache.credential, credential)

    def test_reuse_within_ttl(self):
        first = self.cache.acquire()
        self.clock.now += 30
        second = self.cache.acquire()

        self.assertIs(first, second)
        self.assertEqual(self.issuer.call_count, 1)
        self.assertEqual(self.cache.refresh_count, 1)

    def test_ttl_compared_without_safety_margin(self):
        """The reported TTL is used verbatim: still valid just before, refreshed at the TTL."""
        first = self.cache.acquire()

        self.clock.now += 59.999
        self.assertIs(self.cache.acquire(), first)
        self.assertEqual(self.issuer.call_count, 1)

        self.clock.now = first.issued_at + 60
        second = self.cache.acquire()
        self.assertIsNot(second, first)
        self.assertEqual(self.issuer.call_count, 2)

    def test_configured_expiry_margin_refreshes_early(self):
        cache = CredentialCache(self.issuer, clock=self.clock, expiry_margin_seconds=10)
        first = cache.acquire()

        self.clock.now += 49
        self.assertIs(cache.acquire(), first)

        self.clock.now += 1
        self.assertIsNot(cache.acquire(), first)
        self.assertEqual(self.issuer.call_count, 2)

    def test_failed_refresh_keeps_stale_credential(self):
        stale = self.cache.acquire()
        self.clock.now += 120

        self.issuer.side_effect = CredentialUnavailable("Token endpoint unreachable")
        with self.assertRaises(CredentialUnavailable):
            self.cache.acquire()
        self.assertIs(self.cache.credential, stale)

        self.issuer.side_effect = lambda: make_credential(token='654321', issued_at=self.clock.now)
        fresh = self.cache.acquire()
        self.assertEqual(fresh.access_token, '654321')
        self.assertIs(self.cache.credential, fresh)

    def test_failed_refresh_is_not_retried_within_call(self):
        self.issuer.side_effect = CredentialUnavailable("HTTP 401")

        with self.assertRaises(CredentialUnavailable):
            self.cache.acquire()
        self.assertEqual(self.issuer.call_count, 1)
        self.assertIsNone(self.cache.credential)

    def test_unexpected_issuer_error_is_wrapped(self):
        self.issuer.side_effect = ValueError("bad payload")

        with self.assertRaises(CredentialUnavailable) as context:
            self.cache.acquire()
        self.assertIn("bad payload", str(context.exception))

    def test_invalidate_forces_refresh(self):
        self.cache.acquire()
        self.cache.invalidate()
        self.assertIsNone(self.cache.credential)

        self.cache.acquire()
        self.assertEqual(self.issuer.call_count, 2)


class CountingEvent(threading.Event):
    """Event that counts callers blocked in wait()."""

    waiters = 0
    waiters_lock = threading.Lock()

    def wait(self, timeout=None):
        with CountingEvent.waiters_lock:
            CountingEvent.waiters += 1
        return super().wait(timeout)


class CountingRefresh(credentials_module._Refresh):
    def __init__(self):
        super().__init__()
        self.done = CountingEvent()


class TestSingleFlightRefresh(unittest.TestCase):
    """Concurrent acquire calls share one refresh."""

    THREADS = 8

    def setUp(self):
        CountingEvent.waiters = 0
        self.release = threading.Event()
        self.entered = threading.Event()
        self.calls = 0
        self.calls_lock = threading.Lock()

    def _blocking_issuer(self, outcome):
        def issuer():
            with self.calls_lock:
                self.calls += 1
            self.entered.set()
            self.release.wait(5)
            return outcome()
        return issuer

    def _run_concurrently(self, cache):
        results = [None] * self.THREADS
        errors = [None] * self.THREADS

        def worker(index):
            try:
                results[index] = cache.acquire()
            except CredentialUnavailable as e:
                errors[index] = e

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.THREADS)]
        for thread in threads:
            thread.start()

        self.assertTrue(self.entered.wait(5))
        deadline = time.time() + 5
        while CountingEvent.waiters < self.THREADS - 1 and time.time() < deadline:
            time.sleep(0.01)
        self.assertEqual(CountingEvent.waiters, self.THREADS - 1)

        self.release.set()
        for thread in threads:
            thread.join(5)
        return results, errors

    @patch.object(credentials_module, '_Refresh', CountingRefresh)
    def test_concurrent_acquire_triggers_one_refresh(self):
        cache = CredentialCache(self._blocking_issuer(lambda: make_credential(issued_at=time.time())))

        results, errors = self._run_concurrently(cache)

        self.assertEqual(self.calls, 1)
        self.assertEqual(errors, [None] * self.THREADS)
        self.assertTrue(all(result is results[0] for result in results))

    @patch.object(credentials_module, '_Refresh', CountingRefresh)
    def test_concurrent_callers_share_refresh_failure(self):
        def fail():
            raise CredentialUnavailable("Token request failed with HTTP 401")

        cache = CredentialCache(self._blocking_issuer(fail))

        results, errors = self._run_concurrently(cache)

        self.assertEqual(self.calls, 1)
        self.assertEqual(results, [None] * self.THREADS)
        self.assertTrue(all(isinstance(error, CredentialUnavailable) for error in errors))


if __name__ == '__main__':
    unittest.main()
