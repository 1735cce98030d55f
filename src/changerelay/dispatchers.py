"""
Side-effect dispatchers

Dispatchers are invoked as ``(record_id, tenant_id, payload, idempotency_key)
-> reference_id``. A dispatcher must treat a repeated idempotency key as a
no-op that returns the original reference; the trigger processor may call it
again after a failed archive write.

The meeting scheduler books a meeting when a record that asks for one is
approved, and cancels the meeting found in the record's history when the
record is cancelled.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from changerelay.models import (
    CancelledResourceMetadata,
    Record,
    RecordStatus,
    ScheduledResourceMetadata,
    SideEffectMetadata,
)

logger = logging.getLogger(__name__)

SCHEDULE = "schedule"
CANCEL = "cancel"


class SideEffectDispatcher(ABC):
    """Abstract interface for external side effects"""

    name: str = "dispatcher"

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    def applies_to(self, record: Record, tenant_id: str) -> bool:
        return True

    def build_payload(self, record: Record, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatcher-specific additions to the common payload"""
        return payload

    @abstractmethod
    async def dispatch(
        self,
        record_id: str,
        tenant_id: str,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> str:
        """Perform the side effect and return an external reference ID"""
        pass

    def describe(
        self, record: Record, tenant_id: str, reference_id: str
    ) -> Optional[SideEffectMetadata]:
        """Metadata to keep in the record so the side effect is recoverable"""
        return None


def meeting_details(record: Record) -> Optional[Dict[str, Any]]:
    """Meeting block of a record's content, if a meeting was requested"""
    if not record.content.get("include_meeting"):
        return None
    return record.content.get("meeting") or {}


def scheduling_action(record: Record, tenant_id: str) -> Optional[str]:
    """What the scheduler has to do for the record's current status"""
    active = record.active_resource(tenant_id)
    if record.status == RecordStatus.APPROVED:
        if meeting_details(record) is not None and active is None:
            return SCHEDULE
    elif record.status == RecordStatus.CANCELLED and active is not None:
        return CANCEL
    return None


def scheduled_metadata(
    record: Record, reference_id: str, join_url: Optional[str] = None
) -> Optional[ScheduledResourceMetadata]:
    meeting = meeting_details(record)
    if meeting is None or not meeting.get("start_time") or not meeting.get("end_time"):
        return None
    return ScheduledResourceMetadata(
        reference_id=reference_id,
        join_url=join_url or meeting.get("join_url"),
        start_time=meeting["start_time"],
        end_time=meeting["end_time"],
        subject=meeting.get("subject") or record.title,
        organizer=meeting.get("organizer"),
        attendees=meeting.get("attendees") or [],
    )


class MeetingScheduling:
    """Schedule-on-approval, cancel-on-cancellation behaviour shared by schedulers"""

    def applies_to(self, record: Record, tenant_id: str) -> bool:
        return scheduling_action(record, tenant_id) is not None

    def build_payload(self, record: Record, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        action = scheduling_action(record, tenant_id)
        payload = dict(payload, action=action)
        if action == CANCEL:
            payload["reference_id"] = record.active_resource(tenant_id).reference_id
        else:
            payload["meeting"] = meeting_details(record)
        return payload

    def describe_meeting(
        self, record: Record, tenant_id: str, reference_id: str, join_url: Optional[str] = None
    ) -> Optional[SideEffectMetadata]:
        if scheduling_action(record, tenant_id) == CANCEL:
            return CancelledResourceMetadata(
                reference_id=record.active_resource(tenant_id).reference_id,
                cancellation_id=reference_id,
                reason=record.status.value,
            )
        return scheduled_metadata(record, reference_id, join_url)


class WebhookDispatcher(SideEffectDispatcher):
    """POSTs the payload to an HTTP endpoint with an Idempotency-Key header.

    The endpoint answers with JSON carrying ``reference_id`` (or ``id``).
    """

    def __init__(self, url: str, name: str = "webhook", timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.name = name
        self.timeout = timeout
        self.headers = headers or {}
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession()
            logger.info(f"Dispatcher {self.name} initialized: {self.url}")

    async def shutdown(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    async def _post(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        if self.session is None:
            await self.initialize()

        headers = dict(self.headers)
        headers["Idempotency-Key"] = idempotency_key
        async with self.session.post(
            self.url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status >= 300:
                error_text = await response.text()
                raise RuntimeError(f"{self.name} returned HTTP {response.status}: {error_text}")
            return await response.json()

    async def dispatch(self, record_id, tenant_id, payload, idempotency_key) -> str:
        result = await self._post(payload, idempotency_key)
        reference_id = result.get("reference_id") or result.get("id")
        if not reference_id:
            raise RuntimeError(f"{self.name} response carried no reference id")
        logger.debug(f"{self.name} dispatched {record_id}/{tenant_id} -> {reference_id}")
        return str(reference_id)


class WebhookNotificationDispatcher(WebhookDispatcher):
    """Sends the tenant notification"""

    def __init__(self, url: str, timeout: float = 30.0, headers: Optional[Dict[str, str]] = None):
        super().__init__(url, name="notification", timeout=timeout, headers=headers)


class WebhookSchedulerDispatcher(MeetingScheduling, WebhookDispatcher):
    """Books meetings on approval and cancels them on cancellation.

    The payload's ``action`` is ``schedule`` or ``cancel``; a cancel request
    carries the ``reference_id`` of the meeting to call off.
    """

    def __init__(self, url: str, timeout: float = 30.0, headers: Optional[Dict[str, str]] = None):
        super().__init__(url, name="scheduler", timeout=timeout, headers=headers)
        self._join_urls: Dict[str, str] = {}

    async def dispatch(self, record_id, tenant_id, payload, idempotency_key) -> str:
        result = await self._post(payload, idempotency_key)
        reference_id = result.get("reference_id") or result.get("id")
        if not reference_id and payload.get("action") == CANCEL:
            reference_id = payload["reference_id"]
        if not reference_id:
            raise RuntimeError("scheduler response carried no reference id")
        if result.get("join_url"):
            self._join_urls[str(reference_id)] = result["join_url"]
        logger.info(f"Meeting {payload.get('action')} for {record_id}/{tenant_id}: {reference_id}")
        return str(reference_id)

    def describe(self, record: Record, tenant_id: str, reference_id: str) -> Optional[SideEffectMetadata]:
        return self.describe_meeting(record, tenant_id, reference_id, self._join_urls.pop(reference_id, None))


class RecordingDispatcher(SideEffectDispatcher):
    """In-process dispatcher that remembers every call.

    Used for local runs and tests. Deduplicates by idempotency key, and can be
    told to fail a number of times first. With ``schedules_resource`` it
    behaves like the meeting scheduler.
    """

    def __init__(
        self,
        name: str = "notification",
        applies: Optional[Callable[[Record, str], bool]] = None,
        fail_times: int = 0,
        error: Optional[Exception] = None,
        schedules_resource: bool = False,
    ):
        self.name = name
        self._applies = applies
        self.fail_times = fail_times
        self.error = error or RuntimeError(f"{name} unavailable")
        self.schedules_resource = schedules_resource
        self._meetings = MeetingScheduling()
        self.calls: List[Tuple[str, str, Dict[str, Any], str]] = []
        self.references: Dict[str, str] = {}

    def applies_to(self, record: Record, tenant_id: str) -> bool:
        if self._applies is not None:
            return self._applies(record, tenant_id)
        if self.schedules_resource:
            return self._meetings.applies_to(record, tenant_id)
        return True

    def build_payload(self, record: Record, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.schedules_resource:
            return self._meetings.build_payload(record, tenant_id, payload)
        return payload

    async def dispatch(self, record_id, tenant_id, payload, idempotency_key) -> str:
        self.calls.append((record_id, tenant_id, payload, idempotency_key))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        if idempotency_key not in self.references:
            self.references[idempotency_key] = f"{self.name}-{uuid.uuid4().hex[:12]}"
            logger.info(f"{self.name}: {record_id} for {tenant_id} at {datetime.now().isoformat()}")
        return self.references[idempotency_key]

    @property
    def effects(self) -> int:
        """Number of distinct side effects actually performed"""
        return len(self.references)

    def describe(self, record: Record, tenant_id: str, reference_id: str) -> Optional[SideEffectMetadata]:
        if not self.schedules_resource:
            return None
        return self._meetings.describe_meeting(record, tenant_id, reference_id)


def build_dispatchers(config) -> List[SideEffectDispatcher]:
    """Webhook dispatchers for configured URLs, else a recording notifier"""
    dispatchers: List[SideEffectDispatcher] = []
    if config.notification_webhook_url:
        dispatchers.append(
            WebhookNotificationDispatcher(config.notification_webhook_url, timeout=config.collaborator_timeout)
        )
    if config.scheduler_webhook_url:
        dispatchers.append(
            WebhookSchedulerDispatcher(config.scheduler_webhook_url, timeout=config.collaborator_timeout)
        )
    if not dispatchers:
        logger.warning("No dispatcher URLs configured; side effects are only logged")
        dispatchers.append(RecordingDispatcher())
    return dispatchers
