"""
Shared helpers for changerelay tests
"""

from changerelay.models import Record, RecordStatus, ModificationEntry, ModificationKind, archive_key
from changerelay.processor import create_trigger

SELF_ARN = "arn:aws:iam::123456789012:role/changerelay-backend"


async def no_sleep(_seconds):
    return None


def make_record(record_id="R1", tenants=("T1",), status=RecordStatus.SUBMITTED, **content):
    """Record as the frontend would archive it, submitted unless told otherwise"""
    modifications = [ModificationEntry(kind=ModificationKind.CREATED, actor="alice")]
    if status != RecordStatus.DRAFT:
        modifications.append(ModificationEntry(kind=ModificationKind(status.value), actor="alice"))
    return Record(
        id=record_id,
        status=status,
        tenants=list(tenants),
        title=f"Change {record_id}",
        content=content,
        modifications=modifications,
    )


async def seed(store, record, triggers=True):
    """Archive a record and create triggers for its tenants"""
    await store.put_if_version(archive_key(record.id), record.to_bytes(), None)
    if triggers:
        for tenant_id in record.tenants:
            await create_trigger(store, tenant_id, record.id)
    return record


async def load(store, record_id):
    body, version = await store.get(archive_key(record_id))
    return Record.from_bytes(body, version)
