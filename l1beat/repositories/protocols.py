"""Repository protocols (ports) for hexagonal architecture.

These Protocols define the minimal contracts the application layer depends on.
Concrete adapters (MongoDB, or in-memory fakes in tests) satisfy them via
structural subtyping.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from l1beat.models.schemas import (
    DataType,
    JobError,
    JobState,
    MessageCountSnapshot,
)


class SnapshotRepositoryProtocol(Protocol):
    """Append-only store of MessageCountSnapshot documents."""

    def save(self, snapshot: MessageCountSnapshot) -> None:  # noqa: D401
        """Append a snapshot."""

    def latest(
        self, data_type: DataType, *, since: Optional[datetime] = None
    ) -> Optional[MessageCountSnapshot]:  # noqa: D401
        """Return the newest snapshot (optionally not older than ``since``)."""

    def list_since(
        self, data_type: DataType, since: datetime
    ) -> list[MessageCountSnapshot]:  # noqa: D401
        """Return snapshots with updatedAt >= since, newest first."""


class JobStateRepositoryProtocol(Protocol):
    """Store of one JobState record per data type."""

    def get(self, update_type: DataType) -> Optional[JobState]:  # noqa: D401
        """Return the live record for a data type, if any."""

    def save(self, state: JobState) -> None:  # noqa: D401
        """Upsert the record unconditionally (last writer wins)."""

    def save_if_owner(self, state: JobState) -> bool:  # noqa: D401
        """Update the record only if ``state.run_id`` still owns it."""

    def mark_failed_if_stale(
        self,
        update_type: DataType,
        *,
        cutoff: datetime,
        error: JobError,
        now: datetime,
    ) -> Optional[JobState]:  # noqa: D401
        """Atomically fail an in_progress record not updated since ``cutoff``.

        Returns the updated record, or None if nothing matched.
        """

    def mark_failed_if_started_before(
        self,
        update_type: DataType,
        *,
        started_before: datetime,
        error: JobError,
        now: datetime,
    ) -> Optional[JobState]:  # noqa: D401
        """Atomically fail an in_progress record started before a point in time."""

    def fail_all_in_progress(self, *, error: JobError, now: datetime) -> int:  # noqa: D401
        """Fail every in_progress record; return how many changed."""


class ChainDirectoryProtocol(Protocol):
    """Read-only chain id to display name lookup."""

    def chain_names(self) -> dict[str, str]:  # noqa: D401
        """Return a mapping of EVM chain id (as string) to chain name."""
