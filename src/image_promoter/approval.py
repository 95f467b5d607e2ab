"""Approval gate for protected environments.

A promotion to a protected environment suspends in the Gating state until an
approver decides, the approval deadline passes, or the attempt is cancelled.
The suspended attempt is persisted as a PendingApproval record so that:

- decisions can arrive from another process (``promoter approve`` writes the
  decision into the shared store; the waiting attempt notices it on its next
  poll), and
- a restarted service can find attempts that were waiting and resume them.

Waiting is an ``await`` on an asyncio Future. No lock is held while waiting,
so other attempts keep running.

A record is driven by one waiter at a time. The waiter claims the record
before it starts waiting and releases it when it is done; a resuming service
skips records another process has claimed.

State transitions (terminal states never change again):
    PENDING --approve--> APPROVED
    PENDING --reject / timeout / cancel--> REJECTED
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import UUID

import structlog
from pydantic import ValidationError

from image_promoter.schemas.promotion import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalState,
    PendingApproval,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = structlog.get_logger(__name__)

SYSTEM_TIMEOUT_APPROVER = "system:timeout"
SYSTEM_CANCEL_APPROVER = "system:cancel"


@runtime_checkable
class ApprovalStore(Protocol):
    """Persistence for pending approval records."""

    def get(self, request_id: UUID) -> PendingApproval | None: ...

    def save(self, pending: PendingApproval) -> None: ...

    def list_records(self) -> list[PendingApproval]: ...

    def list_pending(self) -> list[PendingApproval]: ...

    def discard(self, request_id: UUID) -> None: ...

    def claim(self, request_id: UUID) -> bool: ...

    def release(self, request_id: UUID) -> None: ...


class InMemoryApprovalStore:
    """Process-local approval store."""

    def __init__(self) -> None:
        self._records: dict[UUID, PendingApproval] = {}
        self._claimed: set[UUID] = set()
        self._lock = threading.Lock()

    def get(self, request_id: UUID) -> PendingApproval | None:
        with self._lock:
            return self._records.get(request_id)

    def save(self, pending: PendingApproval) -> None:
        with self._lock:
            self._records[pending.request_id] = pending

    def list_records(self) -> list[PendingApproval]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.opened_at)

    def list_pending(self) -> list[PendingApproval]:
        return [r for r in self.list_records() if r.state is ApprovalState.PENDING]

    def discard(self, request_id: UUID) -> None:
        with self._lock:
            self._records.pop(request_id, None)

    def claim(self, request_id: UUID) -> bool:
        """Take ownership of a record. Returns False if it is already owned."""
        with self._lock:
            if request_id in self._claimed:
                return False
            self._claimed.add(request_id)
            return True

    def release(self, request_id: UUID) -> None:
        with self._lock:
            self._claimed.discard(request_id)


class FileApprovalStore:
    """Approval store keeping one JSON document per request in a directory.

    Writes go to a temporary file that is atomically renamed into place, so a
    reader in another process never sees a half-written record.

    Ownership of a record is an exclusive ``flock`` on ``<request_id>.lock``.
    The operating system drops the lock when the owning process exits, so the
    records of a service that died while waiting can be claimed again.

    Args:
        directory: Directory holding ``<request_id>.json`` files. Created on
            first write.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._claims: dict[UUID, int] = {}
        self._claims_lock = threading.Lock()

    def _path(self, request_id: UUID) -> Path:
        return self.directory / f"{request_id}.json"

    def _lock_path(self, request_id: UUID) -> Path:
        return self.directory / f"{request_id}.lock"

    def get(self, request_id: UUID) -> PendingApproval | None:
        path = self._path(request_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return PendingApproval.model_validate_json(text)

    def save(self, pending: PendingApproval) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(pending.request_id)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        tmp_path.write_text(pending.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _iter_records(self) -> Iterator[PendingApproval]:
        if not self.directory.is_dir():
            return
        for path in sorted(self.directory.glob("*.json")):
            try:
                yield PendingApproval.model_validate_json(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            except ValidationError as e:
                logger.warning("approval_record_unreadable", path=str(path), error=str(e))

    def list_records(self) -> list[PendingApproval]:
        return sorted(self._iter_records(), key=lambda r: r.opened_at)

    def list_pending(self) -> list[PendingApproval]:
        return [r for r in self.list_records() if r.state is ApprovalState.PENDING]

    def discard(self, request_id: UUID) -> None:
        self._path(request_id).unlink(missing_ok=True)

    def claim(self, request_id: UUID) -> bool:
        """Take ownership of a record without blocking.

        Returns:
            False if this or another process already owns the record.
        """
        with self._claims_lock:
            if request_id in self._claims:
                return False

        self.directory.mkdir(parents=True, exist_ok=True)
        lock_path = self._lock_path(request_id)
        lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(lock_fd)
            if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK):
                raise
            return False

        # The previous owner unlinks the lock file on release; a lock taken on
        # the unlinked file does not exclude a newer owner of the path.
        try:
            current = os.stat(lock_path)
        except FileNotFoundError:
            current = None
        if current is None or current.st_ino != os.fstat(lock_fd).st_ino:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            os.close(lock_fd)
            return False

        with self._claims_lock:
            self._claims[request_id] = lock_fd
        logger.debug("approval_record_claimed", request_id=str(request_id), pid=os.getpid())
        return True

    def release(self, request_id: UUID) -> None:
        with self._claims_lock:
            lock_fd = self._claims.pop(request_id, None)
        if lock_fd is None:
            return
        try:
            self._lock_path(request_id).unlink(missing_ok=True)
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            os.close(lock_fd)


def _wake(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class ApprovalGate:
    """Suspend attempts until a decision, the deadline or a cancellation.

    Args:
        store: Where pending records live.
        poll_interval_seconds: How often a waiting attempt re-reads the store
            for decisions written by other processes.

    Example:
        >>> gate = ApprovalGate(InMemoryApprovalStore())
        >>> gate.open(pending)
        >>> decided = await gate.wait(pending.request_id)
    """

    def __init__(self, store: ApprovalStore, poll_interval_seconds: float = 5.0) -> None:
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._waiters: dict[UUID, tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = {}
        self._lock = threading.Lock()

    def open(self, pending: PendingApproval) -> None:
        """Claim and persist a new pending record.

        Raises:
            ValueError: If the record is already owned by another waiter.
        """
        if not self.store.claim(pending.request_id):
            raise ValueError(f"approval record {pending.request_id} is already claimed")
        try:
            self.store.save(pending)
        except Exception:
            self.store.release(pending.request_id)
            raise
        logger.info(
            "approval_requested",
            request_id=str(pending.request_id),
            target_tag=pending.request.target_tag,
            deadline=pending.deadline.isoformat(),
        )

    def claim(self, request_id: UUID) -> bool:
        """Take ownership of an existing record before waiting on it."""
        return self.store.claim(request_id)

    def release(self, request_id: UUID) -> None:
        """Give up ownership; a later resume may pick the record up."""
        self.store.release(request_id)

    def pending(self) -> list[PendingApproval]:
        return self.store.list_pending()

    def unfinished(self) -> list[PendingApproval]:
        """Records whose attempt has not finished: undecided, or decided but not yet acted on.

        A decision can land while no process is waiting (e.g. ``promoter
        approve`` after a restart); such records stay in the store until the
        attempt is resumed.
        """
        return self.store.list_records()

    async def wait(self, request_id: UUID) -> PendingApproval:
        """Wait until the record for ``request_id`` is terminal.

        Returns:
            The terminal record (APPROVED or REJECTED). A record whose
            deadline passes is rejected with ``timed_out=True``.

        Raises:
            KeyError: If no record exists for ``request_id``.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        with self._lock:
            self._waiters[request_id] = (loop, future)

        try:
            while True:
                current = await asyncio.to_thread(self.store.get, request_id)
                if current is None:
                    raise KeyError(f"no pending approval for {request_id}")
                if current.state is not ApprovalState.PENDING:
                    return current

                remaining = (current.deadline - datetime.now(timezone.utc)).total_seconds()
                if remaining <= 0:
                    await asyncio.to_thread(
                        self.resolve,
                        request_id,
                        ApprovalDecision.REJECT,
                        SYSTEM_TIMEOUT_APPROVER,
                        "approval deadline passed",
                        timed_out=True,
                    )
                    continue

                await asyncio.wait({future}, timeout=min(self.poll_interval_seconds, remaining))
        finally:
            with self._lock:
                self._waiters.pop(request_id, None)

    def resolve(
        self,
        request_id: UUID,
        decision: ApprovalDecision,
        approver: str,
        comment: str | None = None,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> bool:
        """Record a decision for a pending approval.

        Safe to call from any thread. A decision for an unknown or already
        decided request is ignored.

        Returns:
            True if the decision was applied.
        """
        log = logger.bind(request_id=str(request_id), decision=decision.value, approver=approver)
        with self._lock:
            current = self.store.get(request_id)
            if current is None or current.state is not ApprovalState.PENDING:
                log.info(
                    "approval_decision_ignored",
                    state=current.state.value if current else "unknown",
                )
                return False

            state = (
                ApprovalState.APPROVED
                if decision is ApprovalDecision.APPROVE
                else ApprovalState.REJECTED
            )
            record = ApprovalRecord(approver_identity=approver, decision=decision, comment=comment)
            self.store.save(
                current.model_copy(
                    update={
                        "state": state,
                        "record": record,
                        "timed_out": timed_out,
                        "cancelled": cancelled,
                    }
                )
            )
            waiter = self._waiters.get(request_id)

        log.info("approval_decided", state=state.value, timed_out=timed_out, cancelled=cancelled)
        if waiter is not None:
            loop, future = waiter
            try:
                loop.call_soon_threadsafe(_wake, future)
            except RuntimeError:
                # Loop already closed; the waiter is gone.
                log.debug("approval_waiter_loop_closed")
        return True

    def cancel(self, request_id: UUID) -> bool:
        """Reject a pending approval as cancelled."""
        return self.resolve(
            request_id,
            ApprovalDecision.REJECT,
            SYSTEM_CANCEL_APPROVER,
            "promotion cancelled",
            cancelled=True,
        )

    def discard(self, request_id: UUID) -> None:
        """Delete a finished record and give up its ownership."""
        try:
            self.store.discard(request_id)
        finally:
            self.store.release(request_id)


__all__ = [
    "SYSTEM_CANCEL_APPROVER",
    "SYSTEM_TIMEOUT_APPROVER",
    "ApprovalGate",
    "ApprovalStore",
    "FileApprovalStore",
    "InMemoryApprovalStore",
]
