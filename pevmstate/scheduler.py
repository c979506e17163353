"""Collaborative scheduler for optimistic parallel transaction execution.

Worker threads pick tasks by advancing whichever of the execution and
validation indices is smaller until they find a task that is ready. To redo a
task for a transaction, a thread updates its status and lowers the matching
index to that transaction if the index was higher.

An incarnation may write to a location that a higher transaction has already
read, so finishing an incarnation can create validation tasks for higher
transactions. Validation is scheduled optimistically and in parallel; a failed
validation aborts the incarnation and makes it run again.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Optional

__all__ = [
    "FinishExecFlags",
    "IncarnationStatus",
    "Scheduler",
    "Task",
    "TaskKind",
    "TxStatus",
    "TxVersion",
]


class IncarnationStatus(Enum):
    """Lifecycle of the latest incarnation of a transaction."""

    READY_TO_EXECUTE = auto()
    EXECUTING = auto()
    EXECUTED = auto()
    VALIDATED = auto()
    ABORTING = auto()


@dataclass
class TxStatus:
    """Latest incarnation number of a transaction and its status."""

    incarnation: int = 0
    status: IncarnationStatus = IncarnationStatus.READY_TO_EXECUTE


@dataclass(frozen=True)
class TxVersion:
    """A transaction index together with one of its incarnations."""

    tx_idx: int
    tx_incarnation: int


class TaskKind(Enum):
    """Kind of work a task asks a worker to do."""

    EXECUTION = auto()
    VALIDATION = auto()


@dataclass(frozen=True)
class Task:
    """A unit of work handed to a worker thread."""

    kind: TaskKind
    tx_version: TxVersion

    @classmethod
    def execution(cls, tx_version: TxVersion) -> Task:
        return cls(TaskKind.EXECUTION, tx_version)

    @classmethod
    def validation(cls, tx_version: TxVersion) -> Task:
        return cls(TaskKind.VALIDATION, tx_version)


class FinishExecFlags(Flag):
    """Facts reported about a finished execution."""

    NONE = 0
    NEED_VALIDATION = auto()
    WROTE_NEW_LOCATION = auto()


class _AtomicIndex:
    """An integer that threads update with read-modify-write operations."""

    __slots__ = ("_value", "_lock")

    def __init__(self, value: int) -> None:
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> int:
        return self._value

    def fetch_add(self, amount: int = 1) -> int:
        with self._lock:
            previous = self._value
            self._value += amount
            return previous

    def fetch_sub(self, amount: int = 1) -> int:
        with self._lock:
            previous = self._value
            self._value -= amount
            return previous

    def fetch_min(self, value: int) -> int:
        with self._lock:
            previous = self._value
            if value < previous:
                self._value = value
            return previous


class Scheduler:
    """Coordinates execution and validation tasks among worker threads."""

    def __init__(self, block_size: int) -> None:
        if block_size < 0:
            raise ValueError("block size cannot be negative")
        self._block_size = block_size
        self._statuses = [TxStatus() for _ in range(block_size)]
        self._status_locks = [threading.Lock() for _ in range(block_size)]
        # Transactions to resume when the key transaction is re-executed.
        self._dependents: list[list[int]] = [[] for _ in range(block_size)]
        self._dependent_locks = [threading.Lock() for _ in range(block_size)]
        self._execution_idx = _AtomicIndex(0)
        # Nothing is validated until the first transaction that needs it shows up.
        self._validation_idx = _AtomicIndex(block_size)
        self._min_validation_idx = _AtomicIndex(block_size)
        self._num_validated = _AtomicIndex(0)
        self._aborted = threading.Event()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(block_size={self._block_size}, "
            f"execution_idx={self._execution_idx.load()}, "
            f"validation_idx={self._validation_idx.load()}, "
            f"aborted={self._aborted.is_set()})"
        )

    @property
    def block_size(self) -> int:
        return self._block_size

    def abort(self) -> None:
        """Stop handing out tasks, typically after a fatal execution error."""
        self._aborted.set()

    def _try_execute(self, tx_idx: int) -> Optional[TxVersion]:
        if tx_idx < self._block_size:
            with self._status_locks[tx_idx]:
                tx = self._statuses[tx_idx]
                if tx.status is IncarnationStatus.READY_TO_EXECUTE:
                    tx.status = IncarnationStatus.EXECUTING
                    return TxVersion(tx_idx, tx.incarnation)
        return None

    def next_task(self) -> Optional[Task]:
        """Return the next task to perform, or None when the block is done or aborted."""
        while not self._aborted.is_set():
            execution_idx = self._execution_idx.load()
            validation_idx = self._validation_idx.load()
            if execution_idx >= self._block_size and validation_idx >= self._block_size:
                if (
                    self._num_validated.load()
                    >= self._block_size - self._min_validation_idx.load()
                ):
                    break
                time.sleep(0)
                continue

            # Prefer validation to minimise re-execution.
            if validation_idx < execution_idx:
                tx_idx = self._validation_idx.fetch_add(1)
                if tx_idx < self._block_size:
                    with self._status_locks[tx_idx]:
                        tx = self._statuses[tx_idx]
                        # Steal the execution job while holding the lock.
                        if tx.status is IncarnationStatus.READY_TO_EXECUTE:
                            tx.status = IncarnationStatus.EXECUTING
                            return Task.execution(TxVersion(tx_idx, tx.incarnation))
                        if tx.status in (
                            IncarnationStatus.EXECUTED,
                            IncarnationStatus.VALIDATED,
                        ):
                            return Task.validation(TxVersion(tx_idx, tx.incarnation))
                        # The validation index is still catching up: refetch indices.
                        if tx.status is IncarnationStatus.ABORTING:
                            continue
                        # Still executing: that execution decides on validation itself.

            tx_version = self._try_execute(self._execution_idx.fetch_add(1))
            if tx_version is not None:
                return Task.execution(tx_version)
        return None

    def add_dependency(self, tx_idx: int, blocking_tx_idx: int) -> bool:
        """Make ``tx_idx`` wait for the next incarnation of ``blocking_tx_idx``.

        Return False when the blocking transaction has already finished
        executing, in which case no dependency is recorded.
        """
        # Holding the blocking transaction's lock stops it from finishing
        # re-execution before the dependency is in place.
        with self._status_locks[blocking_tx_idx]:
            blocking_tx = self._statuses[blocking_tx_idx]
            if blocking_tx.status in (
                IncarnationStatus.EXECUTED,
                IncarnationStatus.VALIDATED,
            ):
                return False

            with self._status_locks[tx_idx]:
                tx = self._statuses[tx_idx]
                assert tx.status is IncarnationStatus.EXECUTING
                tx.status = IncarnationStatus.ABORTING

                with self._dependent_locks[blocking_tx_idx]:
                    self._dependents[blocking_tx_idx].append(tx_idx)
        return True

    def _set_ready_status(self, tx_idx: int) -> None:
        with self._status_locks[tx_idx]:
            tx = self._statuses[tx_idx]
            assert tx.status is IncarnationStatus.ABORTING
            tx.status = IncarnationStatus.READY_TO_EXECUTE
            tx.incarnation += 1

    def finish_execution(
        self, tx_version: TxVersion, flags: FinishExecFlags
    ) -> Optional[Task]:
        """Record a finished execution; may return a validation task for it."""
        idx = tx_version.tx_idx
        need_validation = bool(flags & FinishExecFlags.NEED_VALIDATION)
        wrote_new_location = bool(flags & FinishExecFlags.WROTE_NEW_LOCATION)

        with self._status_locks[idx]:
            tx = self._statuses[idx]
            assert tx.status is IncarnationStatus.EXECUTING
            assert tx.incarnation == tx_version.tx_incarnation

            # Resume dependent transactions.
            with self._dependent_locks[idx]:
                dependents, self._dependents[idx] = self._dependents[idx], []
                for dependent_idx in dependents:
                    self._set_ready_status(dependent_idx)
                    self._execution_idx.fetch_min(dependent_idx)

            # Decide where to validate from next.
            if need_validation:
                min_validation_idx = min(self._min_validation_idx.fetch_min(idx), idx)
            else:
                min_validation_idx = self._min_validation_idx.load()

            if min_validation_idx < self._block_size:
                if idx < min_validation_idx:
                    # Lower than the minimum: re-validate from the minimum.
                    if wrote_new_location:
                        self._validation_idx.fetch_min(min_validation_idx)
                elif idx < self._validation_idx.load():
                    # Between the minimum and the validation index: validate from here.
                    if wrote_new_location:
                        self._validation_idx.fetch_min(idx + 1)
                    if need_validation:
                        tx.status = IncarnationStatus.EXECUTED
                        return Task.validation(tx_version)
                    tx.status = IncarnationStatus.VALIDATED
                    self._num_validated.fetch_add(1)
                # Otherwise the validation index is lower and will catch up.

            if need_validation:
                tx.status = IncarnationStatus.EXECUTED
            else:
                tx.status = IncarnationStatus.VALIDATED
                self._num_validated.fetch_add(1)
        return None

    def try_validation_abort(self, tx_version: TxVersion) -> bool:
        """Try to abort a version after a failed validation.

        Only one failing validation per version can succeed in aborting it.
        """
        with self._status_locks[tx_version.tx_idx]:
            tx = self._statuses[tx_version.tx_idx]
            if tx.status is IncarnationStatus.VALIDATED:
                self._num_validated.fetch_sub(1)
            aborting = tx.status in (
                IncarnationStatus.EXECUTED,
                IncarnationStatus.VALIDATED,
            )
            if aborting:
                tx.status = IncarnationStatus.ABORTING
            return aborting

    def finish_validation(self, tx_version: TxVersion, aborted: bool) -> Optional[Task]:
        """Record a finished validation.

        After a successful abort the transaction is scheduled for re-execution
        and higher transactions for validation; the re-execution task may be
        returned directly.
        """
        idx = tx_version.tx_idx
        if aborted:
            self._set_ready_status(idx)
            self._validation_idx.fetch_min(idx + 1)
            if self._execution_idx.load() > idx:
                version = self._try_execute(idx)
                if version is not None:
                    return Task.execution(version)
        else:
            with self._status_locks[idx]:
                tx = self._statuses[idx]
                if tx.status is IncarnationStatus.EXECUTED:
                    tx.status = IncarnationStatus.VALIDATED
                    self._num_validated.fetch_add(1)
        return None