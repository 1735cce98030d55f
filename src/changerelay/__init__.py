"""
changerelay - idempotent, multi-tenant change notification pipeline

Turns submitted records into per-tenant side effects exactly once in effect,
on top of a version-tagged object store and an at-least-once event source.
"""

__version__ = "0.1.0"

from changerelay.backoff import RetryPolicy, delay
from changerelay.config import RelayConfig, load_config, setup_logging
from changerelay.errors import (
    CollaboratorError,
    ConflictExhaustedError,
    DataIntegrityError,
    ErrorCode,
    NotFoundError,
    RelayError,
    VersionConflictError,
)
from changerelay.fanout import FanOutExecutor, TenantSkipped
from changerelay.guard import ActorIdentity, EventLoopGuard
from changerelay.models import (
    ModificationEntry,
    ModificationKind,
    Record,
    RecordStatus,
    Summary,
    TenantOperationResult,
    archive_key,
    trigger_key,
)
from changerelay.optimistic import OptimisticUpdater
from changerelay.processor import TriggerProcessor, TriggerRun, TriggerState
from changerelay.store import ObjectStore, create_object_store

__all__ = [
    "__version__",
    "RetryPolicy",
    "delay",
    "RelayConfig",
    "load_config",
    "setup_logging",
    "RelayError",
    "ErrorCode",
    "NotFoundError",
    "VersionConflictError",
    "ConflictExhaustedError",
    "DataIntegrityError",
    "CollaboratorError",
    "FanOutExecutor",
    "TenantSkipped",
    "ActorIdentity",
    "EventLoopGuard",
    "ModificationEntry",
    "ModificationKind",
    "Record",
    "RecordStatus",
    "Summary",
    "TenantOperationResult",
    "archive_key",
    "trigger_key",
    "OptimisticUpdater",
    "TriggerProcessor",
    "TriggerRun",
    "TriggerState",
    "ObjectStore",
    "create_object_store",
]
