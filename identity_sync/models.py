"""
Data types exchanged between the identity sync components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from identity_sync.exceptions import SyncError


@dataclass(frozen=True)
class Credential:
    """Access token issued by the identity API token endpoint."""

    access_token: str
    token_type: str
    issued_at: float
    ttl_seconds: int

    @property
    def authorization(self) -> str:
        """Value sent as the Authorization header on API calls."""
        return f"{self.token_type} {self.access_token}"

    def age(self, now: float) -> float:
        return now - self.issued_at


@dataclass(frozen=True)
class IdentityRecord:
    """A single user as seen by either the directory or the identity API."""

    key: str
    surname: str
    source_modified_at: Optional[datetime] = None


# Users keyed by IdentityRecord.key
IdentitySet = Dict[str, IdentityRecord]


@dataclass(frozen=True)
class CreationFailure:
    """A user that could not be created during a cycle."""

    key: str
    reason: str


@dataclass
class CycleResult:
    """
    Outcome of one reconciliation cycle.

    A cycle with ``error`` set was aborted before any user was created.
    """

    attempted: int = 0
    created: int = 0
    failures: List[CreationFailure] = field(default_factory=list)
    created_keys: List[str] = field(default_factory=list)
    error: Optional[SyncError] = None
    directory_count: int = 0
    datastore_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def aborted(self) -> bool:
        return self.error is not None

    @property
    def runtime_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary view used for logging and notifications."""
        return {
            'attempted': self.attempted,
            'created': self.created,
            'created_keys': list(self.created_keys),
            'failures': [{'key': f.key, 'reason': f.reason} for f in self.failures],
            'error': str(self.error) if self.error else None,
            'error_type': type(self.error).__name__ if self.error else None,
            'directory_count': self.directory_count,
            'datastore_count': self.datastore_count,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'runtime_seconds': self.runtime_seconds,
        }
