"""
Transaction engine for the Firestore REST SDK.

This module provides:
- Transaction: the handle passed to a transaction function. Reads go to the
  server under the transaction token; writes are buffered locally.
- TransactionRunner: the begin -> execute -> commit loop with retry on
  contention, backoff, cancellation and deadlines.
- TransactionOptions / BackoffPolicy: per-call configuration.

State machine (TransactionRunner.state):

    IDLE -> ACTIVE -> COMMITTING -> COMMITTED
                 \\            \\
                  \\            +-> ACTIVE          (contention: new handle, fn re-run)
                   +-> ROLLING_BACK -> ROLLED_BACK (any other failure, cancellation)

The transaction function may run more than once. Each retry discards all
buffered writes and calls it again from scratch with a fresh handle, so it
must not have side effects outside the handle's own reads and writes.

Known limitation: a read issued after a buffered write to the same document
returns the server's committed data, not the buffered write. Writes are
never replayed client-side.

Invariants:
    - Writes reach the server only in the commit request, in issue order
    - Every read inside an attempt carries that attempt's token
    - All in-flight reads finish before commit is sent
    - Only ContentionError is retried; at most max_attempts commits are sent
    - Rollback failures are logged and never replace the original error
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from .config import Settings
from .errors import (
    CancelledError,
    ContentionError,
    DeadlineExceededError,
    TransactionAbortedError,
    UsageError,
)
from .paths import FieldPath
from .query import Query
from .references import DocumentReference
from .snapshot import DocumentSnapshot, QuerySnapshot
from .writes import PendingWrite, build_create, build_delete, build_set, build_update

if TYPE_CHECKING:
    from .client import Firestore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter between attempts.

    Attributes:
        base_ms: Delay before the first retry
        multiplier: Growth factor per retry
        max_ms: Cap on the delay
        jitter: Random factor in [1 - jitter, 1 + jitter]
    """

    base_ms: float = 100.0
    multiplier: float = 2.0
    max_ms: float = 5000.0
    jitter: float = 0.2

    def delay(self, retry_number: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait before retry ``retry_number`` (1-indexed)."""
        backoff = self.base_ms * (self.multiplier ** (retry_number - 1))
        backoff = min(backoff, self.max_ms)
        if self.jitter > 0:
            backoff *= (rng or random).uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, backoff) / 1000.0


@dataclass(frozen=True)
class TransactionOptions:
    """Options for one run_transaction() call.

    Attributes:
        max_attempts: Attempts before TransactionAbortedError
        read_only: Begin a read-only transaction (writes become UsageError)
        read_time: Read-only snapshot time
        backoff: Delay policy between attempts
        attempt_timeout: Seconds allowed per attempt
        total_timeout: Seconds allowed for the whole call, backoff included
        cancel_event: Set it to stop the transaction
    """

    max_attempts: int = 5
    read_only: bool = False
    read_time: Optional[datetime] = None
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempt_timeout: Optional[float] = None
    total_timeout: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise UsageError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.read_time is not None and not self.read_only:
            raise UsageError("read_time is only valid for read-only transactions")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> TransactionOptions:
        params: dict = {
            "max_attempts": settings.max_attempts,
            "backoff": BackoffPolicy(
                base_ms=settings.backoff_base_ms,
                multiplier=settings.backoff_multiplier,
                max_ms=settings.backoff_max_ms,
                jitter=settings.backoff_jitter,
            ),
            "attempt_timeout": settings.attempt_timeout,
            "total_timeout": settings.total_timeout,
        }
        params.update(overrides)
        return cls(**params)


class Transaction:
    """Transaction-scoped handle passed to the transaction function.

    Example:
        >>> async def transfer(txn: Transaction) -> int:
        ...     snap = await txn.get(src)
        ...     balance = snap.get("balance")
        ...     txn.update(src, {"balance": balance - 10})
        ...     txn.update(dst, {"balance": Increment(10)})
        ...     return balance - 10
    """

    def __init__(
        self,
        client: Firestore,
        token: str,
        *,
        read_only: bool = False,
        attempt: int = 1,
    ) -> None:
        self._client = client
        self._token = token
        self._read_only = read_only
        self._attempt = attempt
        self._state = TransactionState.ACTIVE
        self._writes: List[PendingWrite] = []
        self._reads_in_flight = 0
        self._reads: Set[asyncio.Task] = set()
        self._reads_idle = asyncio.Event()
        self._reads_idle.set()

    @property
    def id(self) -> str:
        """Server transaction token."""
        return self._token

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def read_only(self) -> bool:
        return self._read_only

    @property
    def pending_writes(self) -> Tuple[PendingWrite, ...]:
        return tuple(self._writes)

    def _check_active(self, action: str) -> None:
        if self._state != TransactionState.ACTIVE:
            raise UsageError(
                f"Cannot {action}: transaction {self._token[:12]}... is {self._state.value}. "
                "Use the handle only inside the transaction function."
            )

    def _check_reference(self, ref: Any) -> DocumentReference:
        if not isinstance(ref, DocumentReference):
            raise UsageError(f"Expected a DocumentReference, got {type(ref).__name__}")
        if ref.resource_path.database != self._client.database:
            raise UsageError(f"'{ref.path}' belongs to another database than this transaction")
        return ref

    def _start_read(self, coro: Awaitable[T]) -> asyncio.Task[T]:
        # counted at issue time, before the task is first scheduled
        self._reads_in_flight += 1
        self._reads_idle.clear()
        task = asyncio.ensure_future(coro)
        self._reads.add(task)
        task.add_done_callback(self._read_done)
        return task

    def _read_done(self, task: asyncio.Task) -> None:
        self._reads.discard(task)
        self._reads_in_flight -= 1
        if self._reads_in_flight == 0:
            self._reads_idle.set()
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Transaction read failed: {task.exception()!r}")

    async def wait_for_reads(self) -> None:
        await self._reads_idle.wait()

    def get(
        self,
        ref_or_query: Union[DocumentReference, Query],
    ) -> asyncio.Task[Union[DocumentSnapshot, QuerySnapshot]]:
        """Read a document or run a query inside the transaction.

        The read is registered with the transaction as soon as this is
        called; await the returned task for the snapshot. Returns server
        data as of the transaction; buffered writes are not visible.
        """
        self._check_active("read")
        if isinstance(ref_or_query, Query):
            if ref_or_query.collection_path.database != self._client.database:
                raise UsageError("Query belongs to another database than this transaction")
            return self._start_read(self._client.run_query(ref_or_query, transaction=self._token))

        ref = self._check_reference(ref_or_query)
        return self._start_read(self._get_one(ref))

    async def _get_one(self, ref: DocumentReference) -> DocumentSnapshot:
        snapshots = await self._client.batch_get([ref.resource_path], transaction=self._token)
        return snapshots[0]

    def get_all(self, refs: Sequence[DocumentReference]) -> asyncio.Task[List[DocumentSnapshot]]:
        """Read several documents in one request inside the transaction."""
        self._check_active("read")
        checked = [self._check_reference(r) for r in refs]
        return self._start_read(
            self._client.batch_get([r.resource_path for r in checked], transaction=self._token)
        )

    def _cancel_reads(self) -> None:
        for task in list(self._reads):
            task.cancel()
    def _buffer(self, write: PendingWrite) -> Transaction:
        self._check_active("write")
        if self._read_only:
            raise UsageError("Cannot write in a read-only transaction")
        self._writes.append(write)
        return self

    def set(
        self,
        ref: DocumentReference,
        data: Mapping[str, Any],
        *,
        merge: Union[bool, list] = False,
    ) -> Transaction:
        """Buffer a set. No I/O until commit."""
        ref = self._check_reference(ref)
        return self._buffer(build_set(ref.resource_path, data, merge=merge))

    def create(self, ref: DocumentReference, data: Mapping[str, Any]) -> Transaction:
        """Buffer a create; the commit fails with AlreadyExistsError if it exists."""
        ref = self._check_reference(ref)
        return self._buffer(build_create(ref.resource_path, data))

    def update(
        self,
        ref: DocumentReference,
        data: Mapping[Union[str, FieldPath], Any],
        *,
        last_update_time: Optional[str] = None,
        must_exist: Optional[bool] = None,
    ) -> Transaction:
        """Buffer a partial update keyed by field paths."""
        ref = self._check_reference(ref)
        if must_exist is None:
            must_exist = self._client.settings.update_must_exist
        return self._buffer(
            build_update(
                ref.resource_path,
                data,
                must_exist=must_exist,
                last_update_time=last_update_time,
            )
        )

    def delete(
        self,
        ref: DocumentReference,
        *,
        last_update_time: Optional[str] = None,
        must_exist: bool = False,
    ) -> Transaction:
        """Buffer a delete."""
        ref = self._check_reference(ref)
        return self._buffer(
            build_delete(ref.resource_path, must_exist=must_exist, last_update_time=last_update_time)
        )

    def _transition(self, state: TransactionState) -> None:
        self._state = state
        if state in (TransactionState.ROLLING_BACK, TransactionState.ROLLED_BACK):
            self._cancel_reads()
        if state in (TransactionState.COMMITTED, TransactionState.ROLLED_BACK):
            self._writes.clear()

    def __repr__(self) -> str:
        return f"Transaction(attempt={self._attempt}, state={self._state.value}, writes={len(self._writes)})"


class TransactionRunner:
    """Runs one transaction function to completion.

    A runner is single-use: create one per run_transaction() call.
    """

    def __init__(
        self,
        client: Firestore,
        options: TransactionOptions,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._options = options
        self._rng = rng
        self._current: Optional[Transaction] = None
        self._state = TransactionState.IDLE
        self.history: List[TransactionState] = [TransactionState.IDLE]
        self.attempts = 0
        self.commits = 0

    @property
    def state(self) -> TransactionState:
        return self._state

    def _set_state(self, state: TransactionState) -> None:
        self._state = state
        self.history.append(state)
        if self._current is not None:
            self._current._transition(state)

    async def run(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        if self._state != TransactionState.IDLE:
            raise UsageError("TransactionRunner instances are single-use")

        options = self._options
        loop = asyncio.get_running_loop()
        deadline = loop.time() + options.total_timeout if options.total_timeout is not None else None
        retry_token: Optional[str] = None
        last_error: Optional[ContentionError] = None

        try:
            for attempt in range(1, options.max_attempts + 1):
                if attempt > 1:
                    await self._backoff(attempt, deadline)
                self._check_cancelled(attempt)
                self.attempts = attempt
                self._current = None
                try:
                    return await self._guard(self._attempt(fn, attempt, retry_token), attempt, deadline)
                except ContentionError as e:
                    last_error = e
                    txn = self._current
                    # None when beginTransaction itself aborted
                    if txn is not None:
                        retry_token = txn.id
                        if txn.state == TransactionState.ACTIVE:
                            # aborted on a read; the handle is still open server-side
                            await self._rollback_quietly(txn)
                        else:
                            txn._transition(TransactionState.ROLLED_BACK)
                    logger.warning(
                        f"Transaction attempt {attempt}/{options.max_attempts} aborted by contention: {e.message}"
                    )
        except asyncio.CancelledError:
            if self._current is not None:
                await asyncio.shield(self._rollback_quietly(self._current))
            raise
        except BaseException:
            if self._current is not None:
                await self._rollback_quietly(self._current)
            raise

        raise TransactionAbortedError(
            f"Transaction aborted after {options.max_attempts} attempts due to contention",
            attempts=options.max_attempts,
        ) from last_error

    async def _attempt(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        attempt: int,
        retry_token: Optional[str],
    ) -> T:
        token = await self._client.begin_transaction(
            read_only=self._options.read_only,
            read_time=self._options.read_time,
            retry_transaction=retry_token,
        )
        self._current = Transaction(
            self._client,
            token,
            read_only=self._options.read_only,
            attempt=attempt,
        )
        self._set_state(TransactionState.ACTIVE)
        logger.debug(f"Transaction attempt {attempt} started")

        result = await fn(self._current)
        await self._current.wait_for_reads()

        writes = list(self._current.pending_writes)
        self._set_state(TransactionState.COMMITTING)
        self.commits += 1
        await self._client.commit_writes(writes, transaction=token)
        self._set_state(TransactionState.COMMITTED)
        logger.debug(f"Transaction attempt {attempt} committed {len(writes)} write(s)")
        return result

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - asyncio.get_running_loop().time()

    def _attempt_timeout(self, deadline: Optional[float]) -> Optional[float]:
        candidates = [t for t in (self._options.attempt_timeout, self._remaining(deadline)) if t is not None]
        return min(candidates) if candidates else None

    def _check_cancelled(self, attempt: int) -> None:
        event = self._options.cancel_event
        if event is not None and event.is_set():
            raise CancelledError("Transaction cancelled", attempts=attempt - 1)

    async def _guard(self, coro: Awaitable[T], attempt: int, deadline: Optional[float]) -> T:
        """Await one attempt, abandoning it on cancellation or timeout."""
        task = asyncio.ensure_future(coro)
        waiters = {task}
        cancel_waiter = None
        if self._options.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self._options.cancel_event.wait())
            waiters.add(cancel_waiter)

        timeout = self._attempt_timeout(deadline)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(timeout, 0.0) if timeout is not None else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await _abandon(task)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        await _abandon(task)
        if cancel_waiter is not None and cancel_waiter in done:
            raise CancelledError("Transaction cancelled", attempts=attempt)
        raise DeadlineExceededError(f"Transaction attempt {attempt} exceeded its deadline", attempts=attempt)

    async def _backoff(self, attempt: int, deadline: Optional[float]) -> None:
        delay = self._options.backoff.delay(attempt - 1, self._rng)
        remaining = self._remaining(deadline)
        if remaining is not None and remaining <= delay:
            raise DeadlineExceededError(
                f"Transaction deadline leaves no time for attempt {attempt}",
                attempts=attempt - 1,
            )
        logger.info(f"Retrying transaction (attempt {attempt}/{self._options.max_attempts}) in {delay * 1000:.0f}ms")

        event = self._options.cancel_event
        if event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise CancelledError("Transaction cancelled during backoff", attempts=attempt - 1)

    async def _rollback_quietly(self, txn: Transaction) -> None:
        """Best-effort rollback; failures are logged, never raised."""
        if txn.state not in (TransactionState.ACTIVE, TransactionState.COMMITTING):
            return
        self._set_state(TransactionState.ROLLING_BACK)
        try:
            await self._client.rollback(txn.id)
            logger.debug(f"Rolled back transaction attempt {txn.attempt}")
        except Exception as e:
            logger.warning(f"Rollback of transaction attempt {txn.attempt} failed: {e}", exc_info=True)
        finally:
            self._set_state(TransactionState.ROLLED_BACK)


async def _abandon(task: asyncio.Future) -> None:
    """Cancel an attempt and let it unwind without awaiting its I/O."""
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned transaction attempt ended with: {task.exception()!r}")
