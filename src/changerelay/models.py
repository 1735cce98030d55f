"""
Core data model for changerelay

Records live at ``archive/{record_id}``; per-tenant triggers live at
``triggers/{tenant_id}/{record_id}``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from changerelay.errors import InvalidEventError, InvalidRecordError

ARCHIVE_PREFIX = "archive/"
TRIGGER_PREFIX = "triggers/"
BACKEND_ACTOR = "backend-system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStatus(Enum):
    """Lifecycle of a change or announcement"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ModificationKind(Enum):
    """Kinds of entries in a record's modification history"""
    CREATED = "created"
    UPDATED = "updated"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESOURCE_SCHEDULED = "resource_scheduled"
    RESOURCE_CANCELLED = "resource_cancelled"
    PROCESSED = "processed"


# Entries that move the record to a new status; processing is tracked per status
STATUS_CHANGING_KINDS = {
    ModificationKind.CREATED,
    ModificationKind.SUBMITTED,
    ModificationKind.APPROVED,
    ModificationKind.CANCELLED,
    ModificationKind.COMPLETED,
}


class ScheduledResourceMetadata(BaseModel):
    """Reference to a meeting or other resource booked for the record"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["resource_scheduled"] = "resource_scheduled"
    reference_id: str
    join_url: Optional[str] = None
    start_time: datetime
    end_time: datetime
    subject: str = ""
    organizer: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)

    @field_validator("reference_id")
    @classmethod
    def _reference_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reference_id must not be empty")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "ScheduledResourceMetadata":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class CancelledResourceMetadata(BaseModel):
    """A previously scheduled resource that was called off"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["resource_cancelled"] = "resource_cancelled"
    reference_id: str
    cancellation_id: Optional[str] = None
    reason: Optional[str] = None


class ProcessedMetadata(BaseModel):
    """Receipts of the side effects dispatched for one tenant.

    ``status_entry_id`` names the status-changing history entry the side
    effects were dispatched for, so a status change that lands mid-processing
    is not mistaken for handled.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["processed"] = "processed"
    receipts: Dict[str, str] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    status: Optional[str] = None
    status_entry_id: Optional[str] = None


SideEffectMetadata = Annotated[
    Union[ScheduledResourceMetadata, CancelledResourceMetadata, ProcessedMetadata],
    Field(discriminator="kind"),
]

# Entry kinds that only make sense with their side-effect metadata attached
METADATA_REQUIRED_KINDS = {
    ModificationKind.RESOURCE_SCHEDULED,
    ModificationKind.RESOURCE_CANCELLED,
}


class ModificationEntry(BaseModel):
    """Immutable audit entry appended to a record's history"""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = BACKEND_ACTOR
    kind: ModificationKind
    tenant_id: Optional[str] = None
    metadata: Optional[SideEffectMetadata] = None

    @model_validator(mode="after")
    def _check_metadata(self) -> "ModificationEntry":
        if self.kind in METADATA_REQUIRED_KINDS and self.metadata is None:
            raise ValueError(f"{self.kind.value} entries require resource metadata")
        if self.metadata is not None and self.metadata.kind != self.kind.value:
            raise ValueError(
                f"metadata of kind {self.metadata.kind} not allowed on {self.kind.value} entry"
            )
        if self.kind == ModificationKind.PROCESSED and not self.tenant_id:
            raise ValueError("processed entries require a tenant_id")
        return self

    @classmethod
    def processed(
        cls,
        tenant_id: str,
        receipts: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
        actor: str = BACKEND_ACTOR,
        status: Optional[str] = None,
        status_entry_id: Optional[str] = None,
    ) -> "ModificationEntry":
        return cls(
            kind=ModificationKind.PROCESSED,
            tenant_id=tenant_id,
            actor=actor,
            metadata=ProcessedMetadata(
                receipts=receipts or {},
                idempotency_key=idempotency_key,
                status=status,
                status_entry_id=status_entry_id,
            ),
        )


class Record(BaseModel):
    """Authoritative business object (a change or an announcement)"""

    id: str
    status: RecordStatus = RecordStatus.DRAFT
    tenants: List[str] = Field(default_factory=list)
    title: str = ""
    content: Dict[str, Any] = Field(default_factory=dict)
    modifications: List[ModificationEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    # Version tag observed when the record was read; never persisted
    version: Optional[str] = Field(default=None, exclude=True)

    @field_validator("id")
    @classmethod
    def _id_is_key_safe(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("record id must be non-empty and must not contain '/'")
        return value

    @property
    def key(self) -> str:
        return archive_key(self.id)

    def status_entry(self) -> Optional[ModificationEntry]:
        """Most recent status-changing entry, if any"""
        for entry in reversed(self.modifications):
            if entry.kind in STATUS_CHANGING_KINDS:
                return entry
        return None

    def processed_for(self, tenant_id: str, status_entry_id: Optional[str] = None) -> bool:
        """True if the tenant was processed for a status change.

        Checks the most recent status change unless ``status_entry_id`` names
        another one. Processed entries carrying a status marker only count for
        that status entry; entries without one count if they come after it.
        """
        if status_entry_id is None:
            latest = self.status_entry()
            status_entry_id = latest.entry_id if latest else None

        position = -1
        for index, entry in enumerate(self.modifications):
            if entry.entry_id == status_entry_id:
                position = index

        for index, entry in enumerate(self.modifications):
            if entry.kind != ModificationKind.PROCESSED or entry.tenant_id != tenant_id:
                continue
            marker = entry.metadata.status_entry_id if entry.metadata is not None else None
            if marker is not None:
                if marker == status_entry_id:
                    return True
            elif index > position:
                return True
        return False

    def active_resource(self, tenant_id: Optional[str] = None) -> Optional[ScheduledResourceMetadata]:
        """Latest scheduled resource for the tenant that has not been cancelled"""
        cancelled = set()
        for entry in reversed(self.modifications):
            if tenant_id is not None and entry.tenant_id not in (None, tenant_id):
                continue
            if entry.kind == ModificationKind.RESOURCE_CANCELLED:
                cancelled.add(entry.metadata.reference_id)
            elif entry.kind == ModificationKind.RESOURCE_SCHEDULED:
                if entry.metadata.reference_id not in cancelled:
                    return entry.metadata
        return None

    def merge_modifications(self, entries: Iterable[ModificationEntry]) -> "Record":
        """Append entries not already present, keeping history order"""
        seen = {entry.entry_id for entry in self.modifications}
        for entry in entries:
            if entry.entry_id not in seen:
                self.modifications.append(entry)
                seen.add(entry.entry_id)
        return self

    def merge_tenants(self, tenants: Iterable[str]) -> "Record":
        for tenant_id in tenants:
            if tenant_id not in self.tenants:
                self.tenants.append(tenant_id)
        return self

    def modifications_of(self, kind: ModificationKind) -> List[ModificationEntry]:
        return [entry for entry in self.modifications if entry.kind == kind]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls.model_validate(data)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes, version: Optional[str] = None) -> "Record":
        try:
            record = cls.model_validate_json(body)
        except ValidationError as e:
            raise InvalidRecordError(f"Malformed record: {e}", cause=e)
        record.version = version
        return record


class Trigger(BaseModel):
    """Ephemeral marker: processing is pending for (tenant, record)"""

    record_id: str
    tenant_id: str
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return trigger_key(self.tenant_id, self.record_id)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


def archive_key(record_id: str) -> str:
    return f"{ARCHIVE_PREFIX}{record_id}"


def trigger_key(tenant_id: str, record_id: str) -> str:
    return f"{TRIGGER_PREFIX}{tenant_id}/{record_id}"


def parse_trigger_key(key: str) -> Tuple[str, str]:
    """Split ``triggers/{tenant}/{record}[.json]`` into (tenant_id, record_id)"""
    if not key.startswith(TRIGGER_PREFIX):
        raise InvalidEventError(f"Not a trigger key: {key}", data={"key": key})
    parts = key[len(TRIGGER_PREFIX):].split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidEventError(f"Malformed trigger key: {key}", data={"key": key})
    tenant_id, record_id = parts
    if record_id.endswith(".json"):
        record_id = record_id[: -len(".json")]
    if not record_id:
        raise InvalidEventError(f"Malformed trigger key: {key}", data={"key": key})
    return tenant_id, record_id


@dataclass
class TenantOperationResult:
    """Outcome of one per-tenant operation in a fan-out run"""
    tenant_id: str
    success: bool
    error: Optional[str] = None
    duration: float = 0.0
    value: Any = None
    skipped: bool = False
    tenant_name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.tenant_name:
            return f"{self.tenant_id} ({self.tenant_name})"
        return self.tenant_id


@dataclass
class Summary:
    """Run-level aggregate of a fan-out invocation"""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[TenantOperationResult] = field(default_factory=list)
    wall_clock: float = 0.0

    @classmethod
    def aggregate(cls, results: List[TenantOperationResult], wall_clock: float) -> "Summary":
        summary = cls(total=len(results), results=list(results), wall_clock=wall_clock)
        for result in results:
            if result.success:
                summary.succeeded += 1
            elif result.skipped:
                summary.skipped += 1
            else:
                summary.failed += 1
        return summary

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0

    def result_for(self, tenant_id: str) -> Optional[TenantOperationResult]:
        for result in self.results:
            if result.tenant_id == tenant_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "wall_clock": round(self.wall_clock, 3),
            "results": [
                {
                    "tenant_id": r.tenant_id,
                    "tenant_name": r.tenant_name,
                    "success": r.success,
                    "skipped": r.skipped,
                    "error": r.error,
                    "duration": round(r.duration, 3),
                }
                for r in self.results
            ],
        }

    def render_report(self, title: str = "OPERATION SUMMARY") -> str:
        rule = "=" * 71
        lines = [
            rule,
            f" {title}",
            rule,
            f"Total tenants: {self.total}",
            f" Successful: {self.succeeded}",
            f" Failed: {self.failed}",
            f" Skipped: {self.skipped}",
            f" Total processing time: {self.wall_clock:.2f}s",
        ]
        if self.succeeded:
            lines.append("")
            lines.append(" Successful tenants:")
            lines.extend(
                f"   - {r.label} ({r.duration:.2f}s)" for r in self.results if r.success
            )
        if self.failed:
            lines.append("")
            lines.append(" Failed tenants:")
            lines.extend(
                f"   - {r.label}: {r.error}"
                for r in self.results
                if not r.success and not r.skipped
            )
        if self.skipped:
            lines.append("")
            lines.append(" Skipped tenants:")
            lines.extend(
                f"   - {r.label}" + (f": {r.error}" if r.error else "")
                for r in self.results
                if r.skipped
            )
        lines.append(rule)
        return "\n".join(lines)
