"""
Trigger processor

Handles one trigger (tenant, record) per invocation as a strictly sequential
state machine:

    PENDING -> LOADING -> PROCESSING -> PERSISTING -> CLEANING -> DONE
                  \\            \\             \\
                   +------------+-------------+--> FAILED

A missing trigger is an idempotent no-op (DONE). A missing archive record is a
data-integrity failure that is not retried. The archive write is the
correctness boundary: if it fails the error propagates and the trigger stays in
place for redelivery. Failing to delete the trigger afterwards only logs a
warning.

The processed entry names the status-changing history entry its side effects
were dispatched for. If the record's status changed while dispatching, the
trigger is rewritten instead of deleted so the newer status gets processed.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from changerelay.config import RelayConfig
from changerelay.dispatchers import SideEffectDispatcher
from changerelay.errors import (
    CollaboratorError,
    DataIntegrityError,
    NotFoundError,
    RelayError,
    VersionConflictError,
    classify_error,
)
from changerelay.models import (
    ModificationEntry,
    ModificationKind,
    Record,
    Trigger,
    archive_key,
    trigger_key,
    utcnow,
)
from changerelay.optimistic import OptimisticUpdater
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)


class TriggerState(Enum):
    PENDING = "pending"
    LOADING = "loading"
    PROCESSING = "processing"
    PERSISTING = "persisting"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TriggerRun:
    """What happened while processing one trigger"""
    tenant_id: str
    record_id: str
    state: TriggerState = TriggerState.PENDING
    transitions: List[TriggerState] = field(default_factory=lambda: [TriggerState.PENDING])
    receipts: Dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None
    error: Optional[RelayError] = None
    version: Optional[str] = None
    trigger_deleted: bool = False
    status_entry_id: Optional[str] = None
    superseded: bool = False
    retriggered: bool = False

    def move(self, state: TriggerState) -> None:
        logger.debug(f"Trigger {self.tenant_id}/{self.record_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    def fail(self, error: RelayError) -> "TriggerRun":
        self.error = error
        self.move(TriggerState.FAILED)
        return self

    @property
    def succeeded(self) -> bool:
        return self.state == TriggerState.DONE

    @property
    def side_effects_invoked(self) -> bool:
        return TriggerState.PROCESSING in self.transitions and self.skipped_reason is None


def idempotency_key(record_id: str, tenant_id: str, status: str, dispatcher: str) -> str:
    """Stable key for one side effect of one record status for one tenant"""
    raw = f"{record_id}:{tenant_id}:{status}:{dispatcher}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class TriggerProcessor:
    """Turns a pending trigger into side effects plus one archive entry"""

    def __init__(
        self,
        store: ObjectStore,
        dispatchers: Sequence[SideEffectDispatcher] = (),
        updater: Optional[OptimisticUpdater] = None,
        config: Optional[RelayConfig] = None,
    ):
        self.store = store
        self.dispatchers = list(dispatchers)
        self.config = config or RelayConfig(store_backend="memory")
        self.updater = updater or OptimisticUpdater(
            store, retry=self.config.retry_policy, store_timeout=self.config.store_timeout
        )

    async def _store_call(self, coro):
        return await asyncio.wait_for(coro, self.config.store_timeout)

    async def process(self, tenant_id: str, record_id: str) -> TriggerRun:
        """Process a trigger; raise the run's error if it ended in FAILED"""
        run = await self.run(tenant_id, record_id)
        if run.error is not None:
            raise run.error
        return run

    async def run(self, tenant_id: str, record_id: str) -> TriggerRun:
        """Process a trigger and report the outcome without raising"""
        run = TriggerRun(tenant_id=tenant_id, record_id=record_id)
        t_key = trigger_key(tenant_id, record_id)

        # PENDING -> LOADING
        try:
            pending = await self._store_call(self.store.exists(t_key))
        except Exception as e:
            return run.fail(classify_error(e))
        if not pending:
            logger.info(f"No trigger at {t_key}; already processed")
            run.skipped_reason = "trigger absent"
            run.move(TriggerState.DONE)
            return run
        run.move(TriggerState.LOADING)

        # LOADING -> PROCESSING
        try:
            body, version = await self._store_call(self.store.get(archive_key(record_id)))
            record = Record.from_bytes(body, version)
        except NotFoundError:
            logger.error(f"Trigger {t_key} has no archive record; leaving it for an operator")
            return run.fail(DataIntegrityError(
                f"Archive record {record_id} missing for trigger {t_key}",
                data={"record_id": record_id, "tenant_id": tenant_id},
            ))
        except Exception as e:
            return run.fail(classify_error(e))

        dispatched = record.status_entry()
        run.status_entry_id = dispatched.entry_id if dispatched else None
        if record.processed_for(tenant_id, run.status_entry_id):
            logger.info(f"Record {record_id} already processed for {tenant_id}; removing trigger")
            run.skipped_reason = "already processed"
            run.move(TriggerState.CLEANING)
            await self._delete_trigger(run, t_key)
            run.move(TriggerState.DONE)
            return run
        run.move(TriggerState.PROCESSING)

        # PROCESSING
        try:
            entries = await self._dispatch(run, record)
        except RelayError as e:
            logger.error(f"Side effects failed for {t_key}: {e}")
            return run.fail(e)

        # PROCESSING -> PERSISTING
        run.move(TriggerState.PERSISTING)
        try:
            run.version = await self.updater.update_record(
                record_id,
                lambda current: self._merge(current, run, entries),
            )
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Failed to persist processing of {t_key}: {error}")
            if self.config.delete_trigger_on_persist_failure:
                await self._delete_trigger(run, t_key)
            return run.fail(error)

        # PERSISTING -> CLEANING -> DONE
        run.move(TriggerState.CLEANING)
        if run.superseded:
            # The status moved on while dispatching; the newer status still needs its side effects
            try:
                await self._recreate_trigger(run, t_key)
            except Exception as e:
                logger.error(f"Failed to re-create trigger {t_key} after a status change: {e}")
                return run.fail(classify_error(e))
        else:
            await self._delete_trigger(run, t_key)
        run.move(TriggerState.DONE)
        logger.info(f"Processed record {record_id} for tenant {tenant_id} ({len(run.receipts)} side effects)")
        return run

    def _payload(self, record: Record, tenant_id: str) -> Dict[str, Any]:
        return {
            "record_id": record.id,
            "tenant_id": tenant_id,
            "status": record.status.value,
            "title": record.title,
            "content": record.content,
        }

    async def _dispatch(self, run: TriggerRun, record: Record) -> List[ModificationEntry]:
        """Invoke every applicable dispatcher; return the entries to append"""
        payload = self._payload(record, run.tenant_id)
        entries: List[ModificationEntry] = []
        keys: List[Tuple[str, str]] = []

        for dispatcher in self.dispatchers:
            if not dispatcher.applies_to(record, run.tenant_id):
                continue
            key = idempotency_key(record.id, run.tenant_id, record.status.value, dispatcher.name)
            keys.append((dispatcher.name, key))
            try:
                reference_id = await asyncio.wait_for(
                    dispatcher.dispatch(
                        record.id,
                        run.tenant_id,
                        dispatcher.build_payload(record, run.tenant_id, dict(payload)),
                        key,
                    ),
                    self.config.collaborator_timeout,
                )
            except Exception as e:
                raise CollaboratorError(dispatcher.name, record.id, run.tenant_id, cause=e)

            run.receipts[dispatcher.name] = reference_id
            try:
                metadata = dispatcher.describe(record, run.tenant_id, reference_id)
            except ValueError as e:
                # The side effect happened; only its recorded description is lost
                logger.warning(f"Invalid {dispatcher.name} metadata for {record.id}: {e}")
                metadata = None
            if metadata is not None:
                entries.append(ModificationEntry(
                    kind=ModificationKind(metadata.kind),
                    tenant_id=run.tenant_id,
                    metadata=metadata,
                ))

        combined_key = ",".join(f"{name}={key}" for name, key in keys) or None
        entries.append(ModificationEntry.processed(
            run.tenant_id,
            receipts=dict(run.receipts),
            idempotency_key=combined_key,
            status=record.status.value,
            status_entry_id=run.status_entry_id,
        ))
        return entries

    @staticmethod
    def _merge(record: Record, run: TriggerRun, entries: List[ModificationEntry]) -> Record:
        latest = record.status_entry()
        run.superseded = (latest.entry_id if latest else None) != run.status_entry_id
        if run.superseded:
            logger.info(
                f"Record {record.id} changed to {record.status.value} while processing "
                f"{run.tenant_id}; recording the earlier status only"
            )
        # A concurrent delivery may have recorded this status first
        if record.processed_for(run.tenant_id, run.status_entry_id):
            return record
        return record.merge_modifications(entries)

    async def _delete_trigger(self, run: TriggerRun, t_key: str) -> None:
        try:
            await self._store_call(self.store.delete(t_key))
            run.trigger_deleted = True
        except Exception as e:
            logger.warning(f"Failed to delete trigger {t_key} (will be skipped on redelivery): {e}")

    async def _recreate_trigger(self, run: TriggerRun, t_key: str) -> None:
        """Rewrite the trigger so a fresh storage notification is emitted.

        The write is conditioned on the trigger's current version, so there is
        no window in which the tenant has no pending trigger.
        """
        trigger = Trigger(tenant_id=run.tenant_id, record_id=run.record_id, created_at=utcnow())
        try:
            _, version = await self._store_call(self.store.get(t_key))
        except NotFoundError:
            version = None
        try:
            await self._store_call(self.store.put_if_version(t_key, trigger.to_bytes(), version))
        except VersionConflictError:
            # Another run rewrote or consumed it in between
            logger.info(f"Trigger {t_key} changed concurrently; leaving it as is")
            return
        run.retriggered = True
        logger.info(f"Re-created trigger {t_key} for the newer status")


async def create_trigger(store: ObjectStore, tenant_id: str, record_id: str) -> bool:
    """Write a trigger unless one is already pending; True if created"""
    trigger = Trigger(tenant_id=tenant_id, record_id=record_id, created_at=utcnow())
    try:
        await store.put_if_version(trigger.key, trigger.to_bytes(), None)
    except VersionConflictError:
        return False
    return True
