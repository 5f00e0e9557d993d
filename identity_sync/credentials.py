"""
Access token cache for the identity API.

All outbound API calls share one cached credential. When the credential is
missing or has outlived its TTL, exactly one refresh is sent to the token
endpoint; callers arriving while that refresh is in flight wait for its
outcome instead of requesting their own token.
"""

import logging
import threading
import time
from typing import Callable, Optional

from identity_sync.exceptions import CredentialUnavailable
from identity_sync.models import Credential

logger = logging.getLogger(__name__)


class _Refresh:
    """Outcome of one in-flight token refresh, shared with waiting callers."""

    def __init__(self):
        self.done = threading.Event()
        self.credential: Optional[Credential] = None
        self.error: Optional[CredentialUnavailable] = None


class CredentialCache:
    """
    Holds at most one access credential and refreshes it on demand.

    The TTL reported by the token endpoint is compared verbatim unless an
    ``expiry_margin_seconds`` is configured, so with the default margin a
    credential may expire right after it is handed out.
    """

    def __init__(self, issuer: Callable[[], Credential],
                 clock: Callable[[], float] = time.time,
                 expiry_margin_seconds: float = 0):
        """
        Initialize the credential cache.

        Args:
            issuer: Callable that requests a new credential from the token endpoint
            clock: Time source in epoch seconds, must match Credential.issued_at
            expiry_margin_seconds: Seconds subtracted from the TTL before a refresh is due
        """
        self.issuer = issuer
        self.clock = clock
        self.expiry_margin_seconds = expiry_margin_seconds
        self.refresh_count = 0

        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._refresh: Optional[_Refresh] = None

    @property
    def credential(self) -> Optional[Credential]:
        """Currently held credential, possibly expired."""
        return self._credential

    def is_expired(self, credential: Credential) -> bool:
        return credential.age(self.clock()) >= credential.ttl_seconds - self.expiry_margin_seconds

    def acquire(self) -> Credential:
        """
        Return a usable credential, refreshing it if needed.

        Returns:
            The held credential if still within its TTL, otherwise a new one

        Raises:
            CredentialUnavailable: If the refresh this call depends on failed
        """
        with self._lock:
            credential = self._credential
            if credential is not None and not self.is_expired(credential):
                return credential

            refresh = self._refresh
            leader = refresh is None
            if leader:
                refresh = self._refresh = _Refresh()

        if leader:
            self._run_refresh(refresh)
        else:
            logger.debug("Waiting for in-flight token refresh")
            refresh.done.wait()

        if refresh.error is not None:
            if leader:
                raise refresh.error
            raise CredentialUnavailable(str(refresh.error)) from refresh.error
        return refresh.credential

    def _run_refresh(self, refresh: _Refresh):
        """Request a new credential and publish the outcome to waiting callers."""
        logger.debug("Requesting new access token")
        try:
            self.refresh_count += 1
            refresh.credential = self.issuer()
        except CredentialUnavailable as e:
            refresh.error = e
        except Exception as e:
            refresh.error = CredentialUnavailable(f"Token request failed: {e}")
        finally:
            with self._lock:
                # A failed refresh keeps the stale credential until a later refresh succeeds
                if refresh.credential is not None:
                    self._credential = refresh.credential
                self._refresh = None
            refresh.done.set()

        if refresh.error is not None:
            logger.error(f"Failed to obtain access token: {refresh.error}")
        else:
            logger.info(f"Obtained new access token valid for {refresh.credential.ttl_seconds} seconds")

    def invalidate(self):
        """Drop the held credential so the next acquire requests a new one."""
        with self._lock:
            self._credential = None
