#!/usr/bin/env python3
"""
Unit tests for the reconciliation engine.

Tests the cycle logic with mock readers and a mock identity API client.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.engine import ReconciliationEngine, compute_missing
from identity_sync.exceptions import (
    SyncError,
    CreationFailed,
    CredentialUnavailable,
    DirectoryConnectError,
    DirectorySearchError,
    DatastoreUnauthorized,
    DatastoreUnreachable,
)
from identity_sync.models import Credential, IdentityRecord, CreationFailure


def identity_set(**surnames):
    return {key: IdentityRecord(key=key, surname=surname) for key, surname in surnames.items()}


class TestComputeMissing(unittest.TestCase):
    """Test cases for the set difference."""

    def test_pure_set_difference(self):
        directory = identity_set(alice='Smith', bob='Jones', carol='White')
        datastore = identity_set(alice='Smith', dave='Black')

        self.assertEqual(compute_missing(directory, datastore), ['bob', 'carol'])

    def test_surname_differences_are_ignored(self):
        directory = identity_set(alice='Smith')
        datastore = identity_set(alice='Smythe')

        self.assertEqual(compute_missing(directory, datastore), [])

    def test_empty_directory(self):
        self.assertEqual(compute_missing({}, identity_set(alice='Smith')), [])


class TestReconciliationEngine(unittest.TestCase):
    """Test cases for ReconciliationEngine.run_cycle."""

    def setUp(self):
        self.credential = Credential(access_token='123456', token_type='Bearer',
                                     issued_at=0, ttl_seconds=900)
        self.directory_reader = Mock()
        self.datastore_reader = Mock()
        self.api_client = Mock()
        self.api_client.create_user.side_effect = \
            lambda credential, username, surname: {'username': username, 'surname': surname}
        self.credentials = Mock()
        self.credentials.acquire.return_value = self.credential

        self.engine = ReconciliationEngine(
            self.directory_reader,
            self.datastore_reader,
            self.api_client,
            self.credentials
        )

    def test_creates_missing_user_with_directory_surname(self):
        self.directory_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = identity_set(alice='Smith')

        result = self.engine.run_cycle()

        self.api_client.create_user.assert_called_once_with(self.credential, 'bob', 'Jones')
        self.assertEqual(result.attempted, 1)
        self.assertEqual(result.created, 1)
        self.assertEqual(result.failures, [])
        self.assertEqual(result.created_keys, ['bob'])
        self.assertFalse(result.aborted)
        self.assertEqual(result.directory_count, 2)
        self.assertEqual(result.datastore_count, 1)

    def test_identical_sets_create_nothing(self):
        self.directory_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')

        result = self.engine.run_cycle()

        self.api_client.create_user.assert_not_called()
        self.assertEqual((result.attempted, result.created, result.failures), (0, 0, []))

    def test_directory_failure_aborts_cycle(self):
        self.directory_reader.fetch_all.side_effect = DirectoryConnectError("connection refused")
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertTrue(result.aborted)
        self.assertIsInstance(result.error, DirectoryConnectError)
        self.api_client.create_user.assert_not_called()
        self.credentials.acquire.assert_not_called()
        self.assertEqual(result.attempted, 0)
        # Both reads are always awaited
        self.datastore_reader.fetch_all.assert_called_once()

    def test_datastore_failure_aborts_cycle(self):
        self.directory_reader.fetch_all.return_value = identity_set(bob='Jones')
        self.datastore_reader.fetch_all.side_effect = DatastoreUnauthorized("HTTP 401")

        result = self.engine.run_cycle()

        self.assertIsInstance(result.error, DatastoreUnauthorized)
        self.api_client.create_user.assert_not_called()
        self.credentials.invalidate.assert_called_once()

    def test_rejected_token_discarded_even_when_directory_also_fails(self):
        self.directory_reader.fetch_all.side_effect = DirectoryConnectError("connection refused")
        self.datastore_reader.fetch_all.side_effect = DatastoreUnauthorized("HTTP 401")

        result = self.engine.run_cycle()

        self.assertIsInstance(result.error, DirectoryConnectError)
        self.credentials.invalidate.assert_called_once()

    def test_unreachable_datastore_keeps_credential(self):
        self.directory_reader.fetch_all.return_value = identity_set(bob='Jones')
        self.datastore_reader.fetch_all.side_effect = DatastoreUnreachable("HTTP 503")

        self.engine.run_cycle()

        self.credentials.invalidate.assert_not_called()

    def test_directory_error_reported_when_both_reads_fail(self):
        self.directory_reader.fetch_all.side_effect = DirectorySearchError("noSuchObject")
        self.datastore_reader.fetch_all.side_effect = DatastoreUnreachable("HTTP 503")

        result = self.engine.run_cycle()

        self.assertIsInstance(result.error, DirectorySearchError)

    def test_unexpected_reader_error_is_wrapped(self):
        self.directory_reader.fetch_all.side_effect = RuntimeError("boom")
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertIsInstance(result.error, SyncError)
        self.assertIsInstance(result.error.__cause__, RuntimeError)

    def test_reads_run_concurrently(self):
        datastore_started = threading.Event()

        def read_directory():
            # Only completes if the datastore read is running at the same time
            if not datastore_started.wait(5):
                raise DirectoryConnectError("datastore read never started")
            return identity_set(bob='Jones')

        def read_datastore():
            datastore_started.set()
            return {}

        self.directory_reader.fetch_all.side_effect = read_directory
        self.datastore_reader.fetch_all.side_effect = read_datastore

        result = self.engine.run_cycle()

        self.assertFalse(result.aborted)
        self.assertEqual(result.created_keys, ['bob'])

    def test_partial_creation_failure_is_isolated_and_retried_next_cycle(self):
        def create_user(credential, username, surname):
            if username == 'alice':
                raise DatastoreUnauthorized("Create user alice rejected with HTTP 401: Unauthorized!")
            return {'username': username, 'surname': surname}

        self.api_client.create_user.side_effect = create_user
        self.directory_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertEqual(result.attempted, 2)
        self.assertEqual(result.created, 1)
        self.assertEqual(result.created_keys, ['bob'])
        self.assertEqual(len(result.failures), 1)
        self.assertEqual(result.failures[0].key, 'alice')
        self.assertIn('401', result.failures[0].reason)

        # bob now exists, alice is still missing and is attempted again
        self.api_client.create_user.reset_mock()
        self.api_client.create_user.side_effect = None
        self.datastore_reader.fetch_all.return_value = identity_set(bob='Jones')

        result = self.engine.run_cycle()

        self.api_client.create_user.assert_called_once_with(self.credential, 'alice', 'Smith')
        self.assertEqual((result.attempted, result.created, result.failures), (1, 1, []))

    def test_credential_failure_during_creation_is_recorded(self):
        self.credentials.acquire.side_effect = [
            CredentialUnavailable("Token endpoint unreachable"),
            self.credential,
        ]
        self.directory_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}
        engine = ReconciliationEngine(self.directory_reader, self.datastore_reader,
                                      self.api_client, self.credentials, creation_workers=1)

        result = engine.run_cycle()

        self.assertEqual(result.failures, [CreationFailure('alice', 'Token endpoint unreachable')])
        self.assertEqual(result.created_keys, ['bob'])

    def test_rejected_token_during_creation_is_discarded(self):
        self.api_client.create_user.side_effect = DatastoreUnauthorized("Create user rejected with HTTP 401")
        self.directory_reader.fetch_all.return_value = identity_set(bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertEqual(result.failures[0].key, 'bob')
        self.credentials.invalidate.assert_called_once()

    def test_unexpected_creation_error_is_recorded(self):
        self.api_client.create_user.side_effect = ValueError("bad")
        self.directory_reader.fetch_all.return_value = identity_set(bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertEqual(result.created, 0)
        self.assertEqual(result.failures[0].key, 'bob')
        self.assertIn('bad', result.failures[0].reason)

    def test_sequential_creation_keeps_key_order(self):
        engine = ReconciliationEngine(self.directory_reader, self.datastore_reader,
                                      self.api_client, self.credentials, creation_workers=1)
        self.directory_reader.fetch_all.return_value = identity_set(carol='White', alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        result = engine.run_cycle()

        self.assertEqual(self.api_client.create_user.call_args_list, [
            call(self.credential, 'alice', 'Smith'),
            call(self.credential, 'bob', 'Jones'),
            call(self.credential, 'carol', 'White'),
        ])
        self.assertEqual(result.created_keys, ['alice', 'bob', 'carol'])

    def test_each_creation_acquires_a_credential(self):
        self.directory_reader.fetch_all.return_value = identity_set(alice='Smith', bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        self.engine.run_cycle()

        self.assertEqual(self.credentials.acquire.call_count, 2)

    def test_cycle_awaits_all_creations(self):
        finished = []

        def slow_create(credential, username, surname):
            threading.Event().wait(0.05)
            finished.append(username)
            return {}

        self.api_client.create_user.side_effect = slow_create
        self.directory_reader.fetch_all.return_value = identity_set(a='A', b='B', c='C', d='D', e='E')
        self.datastore_reader.fetch_all.return_value = {}

        result = self.engine.run_cycle()

        self.assertEqual(sorted(finished), ['a', 'b', 'c', 'd', 'e'])
        self.assertEqual(result.created, 5)

    def test_create_identity_raises_creation_failed(self):
        self.api_client.create_user.side_effect = DatastoreUnreachable("HTTP 503")

        with self.assertRaises(CreationFailed) as context:
            self.engine.create_identity(IdentityRecord('bob', 'Jones'))
        self.assertEqual(context.exception.key, 'bob')
        self.assertEqual(context.exception.reason, 'HTTP 503')

    def test_result_serializes_for_reporting(self):
        self.directory_reader.fetch_all.return_value = identity_set(bob='Jones')
        self.datastore_reader.fetch_all.return_value = {}

        data = self.engine.run_cycle().to_dict()

        self.assertEqual(data['created_keys'], ['bob'])
        self.assertIsNone(data['error'])
        self.assertGreaterEqual(data['runtime_seconds'], 0)


if __name__ == '__main__':
    unittest.main()
