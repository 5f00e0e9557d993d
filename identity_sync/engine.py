"""
Reconciliation engine.

One cycle reads the directory and the identity API concurrently, computes
which directory users are missing from the API and creates each of them.
The directory is the source of truth; users are only ever added.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, Any, List, Optional

from identity_sync.credentials import CredentialCache
from identity_sync.exceptions import SyncError, CreationFailed, DatastoreUnauthorized
from identity_sync.identity_api import IdentityAPIClient, DatastoreReader
from identity_sync.ldap_client import DirectoryReader
from identity_sync.logging_setup import security_logger
from identity_sync.models import CycleResult, CreationFailure, IdentityRecord, IdentitySet

logger = logging.getLogger(__name__)


def compute_missing(directory: IdentitySet, datastore: IdentitySet) -> List[str]:
    """
    Return the directory keys that are absent from the datastore, sorted.

    Surname differences for keys present on both sides are ignored.
    """
    return sorted(set(directory) - set(datastore))


class ReconciliationEngine:
    """
    Runs reconciliation cycles between the directory and the identity API.

    Each cycle is self-contained: identity sets are read fresh, and every
    creation call has finished before run_cycle returns.
    """

    def __init__(self, directory_reader: DirectoryReader, datastore_reader: DatastoreReader,
                 api_client: IdentityAPIClient, credentials: CredentialCache,
                 creation_workers: int = 4):
        """
        Initialize reconciliation engine.

        Args:
            directory_reader: Reader for the LDAP side
            datastore_reader: Reader for the identity API side
            api_client: Client used for creation calls
            credentials: Shared credential cache for creation calls
            creation_workers: Maximum concurrent creation calls (1 runs them sequentially)
        """
        self.directory_reader = directory_reader
        self.datastore_reader = datastore_reader
        self.api_client = api_client
        self.credentials = credentials
        self.creation_workers = max(1, int(creation_workers))

    def run_cycle(self) -> CycleResult:
        """
        Run one full reconciliation cycle.

        Returns:
            CycleResult; ``error`` is set if either read failed, in which
            case no creation was attempted
        """
        result = CycleResult(started_at=datetime.now())
        logger.info("Starting reconciliation cycle")

        directory, datastore, error = self._read_both()
        if error is not None:
            result.error = error
            result.finished_at = datetime.now()
            logger.error(f"Reconciliation cycle aborted: {type(error).__name__}: {error}")
            return result

        result.directory_count = len(directory)
        result.datastore_count = len(datastore)

        logger.info("Determining new users...")
        missing = compute_missing(directory, datastore)
        logger.info(f"{len(missing)} of {len(directory)} LDAP users are missing from the DB")

        self._create_missing(missing, directory, result)

        result.finished_at = datetime.now()
        self._log_cycle_summary(result)
        return result

    def _read_both(self):
        """
        Read both identity sets concurrently and wait for both to finish.

        Returns:
            Tuple of (directory set, datastore set, error). Error is the
            directory failure if there was one, otherwise the datastore failure.
        """
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='identity-read') as executor:
            directory_future = executor.submit(self.directory_reader.fetch_all)
            datastore_future = executor.submit(self.datastore_reader.fetch_all)
            wait([directory_future, datastore_future])

        directory, directory_error = self._outcome(directory_future, "LDAP")
        datastore, datastore_error = self._outcome(datastore_future, "DB")
        if isinstance(datastore_error, DatastoreUnauthorized):
            self._discard_credential()
        return directory, datastore, directory_error or datastore_error

    @staticmethod
    def _outcome(future, side: str):
        error = future.exception()
        if error is None:
            return future.result(), None
        if isinstance(error, SyncError):
            logger.error(f"Failed to get the user list from {side}: {error}")
            return None, error
        logger.error(f"Unexpected error reading the user list from {side}: {error}",
                     exc_info=(type(error), error, error.__traceback__))
        wrapped = SyncError(f"Unexpected error reading {side} users: {error}")
        wrapped.__cause__ = error
        return None, wrapped

    def _create_missing(self, missing: List[str], directory: IdentitySet, result: CycleResult):
        """Create every missing user; failures are recorded, never raised."""
        result.attempted = len(missing)
        if not missing:
            return

        with ThreadPoolExecutor(max_workers=self.creation_workers,
                                thread_name_prefix='identity-create') as executor:
            futures = [
                (key, executor.submit(self._create_one, directory[key]))
                for key in missing
            ]

        # Outcomes are collected in sorted key order
        for key, future in futures:
            failure = future.result()
            if failure is None:
                result.created += 1
                result.created_keys.append(key)
            else:
                result.failures.append(failure)

    def create_identity(self, record: IdentityRecord) -> Dict[str, Any]:
        """
        Create one directory user in the identity API.

        Returns:
            The created user as returned by the API

        Raises:
            CreationFailed: If no token could be obtained or the API refused the user
        """
        try:
            credential = self.credentials.acquire()
            return self.api_client.create_user(credential, record.key, record.surname)
        except DatastoreUnauthorized as e:
            self._discard_credential()
            raise CreationFailed(record.key, str(e))
        except SyncError as e:
            raise CreationFailed(record.key, str(e))

    def _discard_credential(self):
        # The API rejected the token before its TTL ran out; the next acquire re-issues
        logger.warning("Identity API rejected the cached token, discarding it")
        self.credentials.invalidate()

    def _create_one(self, record: IdentityRecord) -> Optional[CreationFailure]:
        """Create one user. Returns None on success or the failure."""
        logger.info(f"{record.key} exists only in LDAP")
        try:
            self.create_identity(record)
        except CreationFailed as e:
            logger.error(str(e))
            security_logger.log_user_operation('create', record.key, 'identity_api', False)
            return CreationFailure(key=e.key, reason=e.reason)
        except Exception as e:
            logger.error(f"Unexpected error creating user {record.key}: {e}", exc_info=True)
            security_logger.log_user_operation('create', record.key, 'identity_api', False)
            return CreationFailure(key=record.key, reason=f"Unexpected error: {e}")

        logger.info(f"Added {record.key} to DB")
        security_logger.log_user_operation('create', record.key, 'identity_api', True)
        return None

    def _log_cycle_summary(self, result: CycleResult):
        """Log final cycle statistics."""
        logger.info("=== Cycle Summary ===")
        logger.info(f"Runtime: {result.runtime_seconds:.2f} seconds")
        logger.info(f"LDAP users: {result.directory_count}")
        logger.info(f"DB users: {result.datastore_count}")
        logger.info(f"Users attempted: {result.attempted}")
        logger.info(f"Users created: {result.created}")
        logger.info(f"Creation failures: {len(result.failures)}")
        for failure in result.failures:
            logger.warning(f"  {failure.key}: {failure.reason}")
