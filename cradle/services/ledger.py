"""
Per-owner care event ledger with optimistic writes.

Every submitted event moves through pending -> confirmed, or pending ->
failed (removed). Snapshots are immutable tuples; each mutation publishes a
new tuple and bumps the version, so a reader holding a snapshot never sees it
change underneath.
"""
import asyncio
import time
from functools import partial
from typing import Any, Callable

import structlog

from ..adapters.base import EventStoreAdapter
from ..errors import ValidationError, WriteFailedError
from ..event_models import CareEvent, CareEventDraft, EventStatus, validate_draft

log = structlog.get_logger()

Snapshot = tuple[CareEvent, ...]
SnapshotListener = Callable[[str, int, Snapshot], None]


class LedgerStore:
    """
    Client-side view of one owner's care events.

    Writes are applied to the snapshot immediately and reconciled when the
    remote event store answers. Refetches replace the snapshot wholesale.
    """

    def __init__(self, owner_id: str, event_store: EventStoreAdapter, metrics: Any = None):
        """
        Args:
            owner_id: Caregiver whose events this ledger holds
            event_store: Remote event store collaborator
            metrics: Optional Metrics instance
        """
        self.owner_id = owner_id
        self._event_store = event_store
        self._metrics = metrics
        self._snapshot: Snapshot = ()
        self._version = 0
        self._inflight: dict[str, asyncio.Task] = {}
        self._refetch_seq = 0
        self._listeners: list[SnapshotListener] = []
        self._log = log.bind(owner_id=owner_id)

    @property
    def version(self) -> int:
        return self._version

    def current_snapshot(self) -> Snapshot:
        """Whatever is cached right now; may lag the remote store until the next invalidate."""
        return self._snapshot

    def pending(self) -> frozenset[str]:
        """Correlation ids with a remote write in flight."""
        return frozenset(self._inflight)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call listener(owner_id, version, snapshot) after every change; returns a remover."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def append(self, draft: CareEventDraft | dict[str, Any]) -> CareEvent:
        """
        Optimistically add an event and submit it to the remote store.

        The provisional entry is visible in current_snapshot() before the
        first suspension point. Retrying a correlation_id that is in flight
        joins the existing write; retrying one that is already confirmed
        returns the confirmed entry.

        Returns:
            The confirmed event

        Raises:
            ValidationError: draft is malformed or belongs to another owner
            WriteFailedError: remote write failed; the provisional entry has
                been removed
        """
        draft = validate_draft(draft)
        if draft.owner_id != self.owner_id:
            raise ValidationError(
                f"event owner {draft.owner_id!r} does not match ledger owner {self.owner_id!r}",
                errors=[{"loc": ["owner_id"], "msg": "owner mismatch", "type": "owner_mismatch"}],
            )

        cid = draft.correlation_id
        inflight = self._inflight.get(cid)
        if inflight is not None:
            self._log.info("ledger.append.joined", correlation_id=cid)
            return await asyncio.shield(inflight)

        for entry in self._snapshot:
            if entry.correlation_id == cid and entry.status == EventStatus.CONFIRMED:
                self._log.info("ledger.append.already_confirmed", correlation_id=cid, id=entry.id)
                return entry

        # No await between validation and here: readers see the entry at once.
        self._publish(self._snapshot + (CareEvent.provisional(draft),))
        self._log.info(
            "ledger.append.pending",
            correlation_id=cid,
            event_type=draft.event_type.value,
            version=self._version,
        )

        task = asyncio.ensure_future(self._submit(draft))
        self._inflight[cid] = task
        task.add_done_callback(partial(self._settled, cid))
        # Shielded: a caller that stops waiting does not cancel the remote write.
        return await asyncio.shield(task)

    async def invalidate(self) -> None:
        """
        Refetch the owner's ledger and replace the snapshot in one step.

        Only the most recent refetch is applied; an older one that resolves
        later is dropped. Provisional entries still in flight and missing from
        the refetch stay visible. On failure the last-known snapshot is kept.
        """
        self._refetch_seq += 1
        seq = self._refetch_seq

        try:
            fetched = await self._event_store.list(self.owner_id)
        except Exception as e:
            if seq != self._refetch_seq:
                self._superseded(seq)
                return
            self._record_refetch("failed")
            self._log.warning("ledger.refetch_failed", error=str(e), version=self._version)
            raise

        if seq != self._refetch_seq:
            self._superseded(seq)
            return

        known = {event.correlation_id for event in fetched}
        still_pending = tuple(
            entry for entry in self._snapshot
            if entry.is_pending and entry.correlation_id in self._inflight and entry.correlation_id not in known
        )
        self._publish(tuple(fetched) + still_pending)
        self._record_refetch("applied")
        self._log.info(
            "ledger.refetched",
            events=len(fetched),
            pending=len(still_pending),
            version=self._version,
        )

    async def _submit(self, draft: CareEventDraft) -> CareEvent:
        cid = draft.correlation_id
        start = time.perf_counter()
        try:
            confirmed = await self._event_store.insert(draft)
        except asyncio.CancelledError:
            self._rollback(cid)
            raise
        except Exception as e:
            self._rollback(cid)
            self._record_append(draft, "failed")
            self._log.warning(
                "ledger.append.rolled_back",
                correlation_id=cid,
                error=str(e),
                error_type=type(e).__name__,
                version=self._version,
            )
            raise WriteFailedError(
                f"remote store rejected event {cid}: {e}",
                correlation_id=cid,
                owner_id=self.owner_id,
            ) from e
        finally:
            if self._metrics is not None:
                self._metrics.observe_remote_write(time.perf_counter() - start)

        self._confirm(cid, confirmed)
        self._record_append(draft, "confirmed")
        self._log.info(
            "ledger.append.confirmed",
            correlation_id=cid,
            id=confirmed.id,
            version=self._version,
        )
        return confirmed

    def _confirm(self, cid: str, confirmed: CareEvent) -> None:
        entries: list[CareEvent] = []
        placed = False
        for entry in self._snapshot:
            if entry.correlation_id != cid:
                entries.append(entry)
            elif not placed:
                entries.append(confirmed)
                placed = True
        if not placed:
            # A refetch dropped the provisional entry before the write landed.
            entries.append(confirmed)
        self._publish(tuple(entries))

    def _rollback(self, cid: str) -> None:
        kept = tuple(
            entry for entry in self._snapshot
            if not (entry.correlation_id == cid and entry.is_pending)
        )
        if len(kept) != len(self._snapshot):
            self._publish(kept)
            if self._metrics is not None:
                self._metrics.record_rollback()

    def _settled(self, cid: str, task: asyncio.Task) -> None:
        if self._inflight.get(cid) is task:
            del self._inflight[cid]
        if not task.cancelled():
            # Mark the exception retrieved even if every caller stopped waiting.
            task.exception()

    def _publish(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self.owner_id, self._version, snapshot)
            except Exception as e:
                self._log.error("ledger.listener_failed", error=str(e))

    def _superseded(self, seq: int) -> None:
        self._record_refetch("superseded")
        self._log.info("ledger.refetch_superseded", seq=seq, latest=self._refetch_seq)

    def _record_append(self, draft: CareEventDraft, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_append(draft.event_type.value, outcome)

    def _record_refetch(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_refetch(outcome)


class LedgerRegistry:
    """
    Hands out one LedgerStore per owner.

    Stores are reference counted: created empty on first acquire, torn down
    when the last consumer releases them.
    """

    def __init__(self, event_store: EventStoreAdapter, metrics: Any = None):
        self._event_store = event_store
        self._metrics = metrics
        self._stores: dict[str, LedgerStore] = {}
        self._refs: dict[str, int] = {}

    def acquire(self, owner_id: str) -> LedgerStore:
        store = self._stores.get(owner_id)
        if store is None:
            store = LedgerStore(owner_id, self._event_store, metrics=self._metrics)
            self._stores[owner_id] = store
            self._refs[owner_id] = 0
            log.info("ledger.created", owner_id=owner_id)
            self._update_gauge()
        self._refs[owner_id] += 1
        return store

    def release(self, owner_id: str) -> bool:
        """
        Drop one reference.

        Returns:
            True if this was the last reference and the store was torn down
        """
        if owner_id not in self._refs:
            return False
        self._refs[owner_id] -= 1
        if self._refs[owner_id] > 0:
            return False
        del self._refs[owner_id]
        store = self._stores.pop(owner_id)
        log.info("ledger.torn_down", owner_id=owner_id, pending=len(store.pending()))
        self._update_gauge()
        return True

    def get(self, owner_id: str) -> LedgerStore | None:
        return self._stores.get(owner_id)

    def current_snapshot(self, owner_id: str) -> Snapshot:
        store = self._stores.get(owner_id)
        return store.current_snapshot() if store is not None else ()

    def owners(self) -> list[str]:
        return list(self._stores)

    def refcount(self, owner_id: str) -> int:
        return self._refs.get(owner_id, 0)

    def __contains__(self, owner_id: str) -> bool:
        return owner_id in self._stores

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_active_ledgers(len(self._stores))
