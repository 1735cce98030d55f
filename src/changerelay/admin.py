"""
Administrative operations

Record submission and status changes go through the optimistic update engine;
bulk work across tenants goes through the fan-out executor.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from changerelay.errors import RelayError
from changerelay.fanout import FanOutExecutor, TenantSkipped
from changerelay.models import (
    TRIGGER_PREFIX,
    ModificationEntry,
    ModificationKind,
    Record,
    RecordStatus,
    Summary,
    archive_key,
    parse_trigger_key,
)
from changerelay.optimistic import OptimisticUpdater
from changerelay.processor import TriggerProcessor, create_trigger

logger = logging.getLogger(__name__)

# Statuses that need per-tenant processing once reached
TRIGGERING_STATUSES = {
    RecordStatus.SUBMITTED: ModificationKind.SUBMITTED,
    RecordStatus.APPROVED: ModificationKind.APPROVED,
    RecordStatus.CANCELLED: ModificationKind.CANCELLED,
    RecordStatus.COMPLETED: ModificationKind.COMPLETED,
}


class AdminService:
    """Entry points used by the CLI and other tooling"""

    def __init__(
        self,
        processor: TriggerProcessor,
        executor: Optional[FanOutExecutor] = None,
        max_concurrency: int = 0,
    ):
        self.processor = processor
        self.store = processor.store
        self.updater: OptimisticUpdater = processor.updater
        self.executor = executor or FanOutExecutor()
        self.max_concurrency = max_concurrency

    async def submit(self, record: Record, actor: str) -> Summary:
        """Create the archive record, then one trigger per tenant.

        The record is created with expected version None, so submitting the
        same ID twice fails with VersionConflictError instead of overwriting.
        """
        if not record.tenants:
            raise ValueError(f"Record {record.id} has no tenants")
        if record.status == RecordStatus.DRAFT:
            record.status = RecordStatus.SUBMITTED
        record.merge_modifications([
            ModificationEntry(kind=ModificationKind.CREATED, actor=actor),
        ])
        kind = TRIGGERING_STATUSES.get(record.status)
        if kind is not None:
            record.merge_modifications([ModificationEntry(kind=kind, actor=actor)])

        await self.store.put_if_version(record.key, record.to_bytes(), None)
        logger.info(f"Archived record {record.id} for {len(record.tenants)} tenants")
        return await self.create_triggers(record.id, record.tenants)

    async def change_status(self, record_id: str, status: RecordStatus, actor: str) -> Summary:
        """Move a record to a new status and re-trigger its tenants.

        Raises ConflictExhaustedError if concurrent edits keep winning; the
        caller should refresh and retry.
        """
        tenants: List[str] = []

        def mutate(record: Record) -> Record:
            record.status = status
            kind = TRIGGERING_STATUSES.get(status, ModificationKind.UPDATED)
            record.merge_modifications([ModificationEntry(kind=kind, actor=actor)])
            tenants[:] = record.tenants
            return record

        await self.updater.update_record(record_id, mutate)
        logger.info(f"Record {record_id} moved to {status.value} by {actor}")
        if status not in TRIGGERING_STATUSES:
            return Summary.aggregate([], 0.0)
        return await self.create_triggers(record_id, tenants)

    async def create_triggers(self, record_id: str, tenant_ids: Iterable[str]) -> Summary:
        async def create(tenant_id: str) -> str:
            if not await create_trigger(self.store, tenant_id, record_id):
                raise TenantSkipped("trigger already pending")
            return tenant_id

        return await self.executor.run(tenant_ids, create, self.max_concurrency)

    async def pending_triggers(self, tenant_id: Optional[str] = None) -> Dict[str, List[str]]:
        """Pending record IDs grouped by tenant"""
        prefix = f"{TRIGGER_PREFIX}{tenant_id}/" if tenant_id else TRIGGER_PREFIX
        pending: Dict[str, List[str]] = defaultdict(list)
        for key in await self.store.list_keys(prefix):
            try:
                tenant, record_id = parse_trigger_key(key)
            except RelayError:
                logger.warning(f"Ignoring malformed trigger key {key}")
                continue
            pending[tenant].append(record_id)
        return dict(pending)

    async def drain(
        self,
        tenant_ids: Optional[Iterable[str]] = None,
        max_concurrency: Optional[int] = None,
        tenant_names: Optional[Dict[str, str]] = None,
    ) -> Summary:
        """Process every pending trigger, one fan-out task per tenant"""
        pending = await self.pending_triggers()
        tenants = list(tenant_ids) if tenant_ids is not None else sorted(pending)

        async def process_tenant(tenant_id: str) -> int:
            record_ids = pending.get(tenant_id, [])
            if not record_ids:
                raise TenantSkipped("no pending triggers")
            failures = []
            for record_id in record_ids:
                run = await self.processor.run(tenant_id, record_id)
                if run.error is not None:
                    failures.append(f"{record_id}: {run.error}")
            if failures:
                raise RuntimeError("; ".join(failures))
            return len(record_ids)

        if max_concurrency is None:
            max_concurrency = self.max_concurrency
        return await self.executor.run(tenants, process_tenant, max_concurrency, tenant_names)

    async def load(self, record_id: str) -> Record:
        body, version = await self.store.get(archive_key(record_id))
        return Record.from_bytes(body, version)
