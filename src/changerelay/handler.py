"""
Event intake

Parses storage-change notifications, drops self-generated and test events,
and hands trigger keys to the trigger processor. A delivery is acknowledged
unless at least one of its failures is retryable, in which case it is released
back to the source for redelivery.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple, Union
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from changerelay.errors import InvalidEventError, RelayError, classify_error
from changerelay.guard import ActorIdentity, EventLoopGuard
from changerelay.models import TRIGGER_PREFIX, parse_trigger_key
from changerelay.processor import TriggerProcessor

logger = logging.getLogger(__name__)

TEST_EVENT = "s3:TestEvent"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StorageObject(_Model):
    key: str


class StorageBucket(_Model):
    name: str = ""


class StorageEntity(_Model):
    bucket: StorageBucket = Field(default_factory=StorageBucket)
    obj: StorageObject = Field(alias="object")


class StorageEventRecord(_Model):
    event_name: str = Field(default="", alias="eventName")
    s3: StorageEntity
    user_identity: Optional[ActorIdentity] = Field(default=None, alias="userIdentity")

    @property
    def key(self) -> str:
        # Keys arrive URL-encoded, with '+' for spaces
        return unquote_plus(self.s3.obj.key)


class StorageNotification(_Model):
    records: List[StorageEventRecord] = Field(default_factory=list, alias="Records")
    event: Optional[str] = Field(default=None, alias="Event")
    service: Optional[str] = Field(default=None, alias="Service")

    @property
    def is_test_event(self) -> bool:
        return self.event == TEST_EVENT

    @classmethod
    def parse(cls, body: Union[bytes, str, Dict[str, Any]]) -> "StorageNotification":
        try:
            if isinstance(body, dict):
                return cls.model_validate(body)
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise InvalidEventError(f"Unparseable notification: {e.error_count()} errors", cause=e)


def object_created_event(key: str, actor: Optional[Union[str, Dict[str, Any]]] = None,
                         bucket: str = "changerelay") -> Dict[str, Any]:
    """Build a notification body for one created object"""
    record: Dict[str, Any] = {
        "eventName": "ObjectCreated:Put",
        "s3": {"bucket": {"name": bucket}, "object": {"key": key}},
    }
    if isinstance(actor, str):
        record["userIdentity"] = {"arn": actor}
    elif actor is not None:
        record["userIdentity"] = actor
    return {"Records": [record]}


@dataclass
class BatchReport:
    """Outcome of one notification"""
    processed: int = 0
    skipped: int = 0
    discarded: int = 0
    ignored: int = 0
    test_event: bool = False
    failures: List[Tuple[str, RelayError]] = field(default_factory=list)

    @property
    def retryable_failures(self) -> List[Tuple[str, RelayError]]:
        return [(k, e) for k, e in self.failures if e.retryable]

    @property
    def should_acknowledge(self) -> bool:
        """Only retryable failures keep the delivery alive"""
        return not self.retryable_failures


@dataclass
class ExecutionSummary:
    """Counters for one consumer run, logged once at the end"""
    started: float = field(default_factory=time.monotonic)
    finished: Optional[float] = None
    messages: int = 0
    acknowledged: int = 0
    released: int = 0
    test_events: int = 0
    discarded_events: int = 0
    ignored_keys: int = 0
    triggers_processed: int = 0
    triggers_skipped: int = 0
    retryable_errors: int = 0
    permanent_errors: int = 0
    error_messages: List[str] = field(default_factory=list)

    def record(self, report: BatchReport) -> None:
        self.messages += 1
        self.test_events += int(report.test_event)
        self.discarded_events += report.discarded
        self.ignored_keys += report.ignored
        self.triggers_processed += report.processed
        self.triggers_skipped += report.skipped
        for key, error in report.failures:
            if error.retryable:
                self.retryable_errors += 1
            else:
                self.permanent_errors += 1
            self.error_messages.append(f"{key}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        end = self.finished if self.finished is not None else time.monotonic()
        return {
            "messages": self.messages,
            "acknowledged": self.acknowledged,
            "released": self.released,
            "test_events": self.test_events,
            "discarded_events": self.discarded_events,
            "ignored_keys": self.ignored_keys,
            "triggers_processed": self.triggers_processed,
            "triggers_skipped": self.triggers_skipped,
            "retryable_errors": self.retryable_errors,
            "permanent_errors": self.permanent_errors,
            "duration": round(end - self.started, 3),
        }

    def log(self) -> None:
        self.finished = time.monotonic()
        stats = ", ".join(f"{k}={v}" for k, v in self.to_dict().items())
        logger.info(f"Execution complete: {stats}")
        for message in self.error_messages:
            logger.warning(f"Error during execution: {message}")


class EventHandler:
    """Guard + trigger processor for storage notifications"""

    def __init__(self, processor: TriggerProcessor, guard: EventLoopGuard):
        self.processor = processor
        self.guard = guard

    async def handle(self, body: Union[bytes, str, Dict[str, Any]]) -> BatchReport:
        report = BatchReport()
        try:
            notification = StorageNotification.parse(body)
        except RelayError as e:
            logger.error(f"Dropping malformed notification: {e}")
            report.failures.append(("<notification>", e))
            return report

        if notification.is_test_event:
            logger.info("Storage test event received; nothing to process")
            report.test_event = True
            return report

        for event in notification.records:
            await self._handle_record(event, report)
        return report

    async def _handle_record(self, event: StorageEventRecord, report: BatchReport) -> None:
        if not self.guard.should_process(event.user_identity):
            report.discarded += 1
            return

        key = event.key
        if not key.startswith(TRIGGER_PREFIX):
            logger.debug(f"Ignoring non-trigger key {key}")
            report.ignored += 1
            return

        try:
            tenant_id, record_id = parse_trigger_key(key)
        except InvalidEventError as e:
            report.failures.append((key, e))
            return

        try:
            run = await self.processor.run(tenant_id, record_id)
        except Exception as e:
            report.failures.append((key, classify_error(e)))
            return

        if run.error is not None:
            level = logging.WARNING if run.error.retryable else logging.ERROR
            logger.log(level, f"Trigger {key} failed (retryable={run.error.retryable}): {run.error}")
            report.failures.append((key, run.error))
        elif run.skipped_reason:
            report.skipped += 1
        else:
            report.processed += 1


@dataclass
class Delivery:
    """One message handed out by an event source"""
    body: bytes
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 1
    # Raw message as stored by the source, when it needs it to ack
    raw: Optional[bytes] = None


class EventSource(ABC):
    """At-least-once notification source"""

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    @abstractmethod
    async def publish(self, body: Union[bytes, str, Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def receive(self, max_messages: int = 10) -> List[Delivery]:
        pass

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Remove the message for good"""
        pass

    @abstractmethod
    async def release(self, delivery: Delivery) -> None:
        """Return the message for redelivery"""
        pass

    async def recover(self) -> int:
        """Requeue messages a previous consumer received but never settled"""
        return 0


def _encode(body: Union[bytes, str, Dict[str, Any]]) -> bytes:
    if isinstance(body, dict):
        return json.dumps(body).encode("utf-8")
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


class InMemoryEventSource(EventSource):
    """Queue held in process memory"""

    def __init__(self):
        self.queue: Deque[Delivery] = deque()
        self.in_flight: Dict[str, Delivery] = {}
        self.acknowledged: List[Delivery] = []

    async def publish(self, body) -> None:
        self.queue.append(Delivery(body=_encode(body)))

    async def receive(self, max_messages: int = 10) -> List[Delivery]:
        batch = []
        while self.queue and len(batch) < max_messages:
            delivery = self.queue.popleft()
            self.in_flight[delivery.id] = delivery
            batch.append(delivery)
        return batch

    async def ack(self, delivery: Delivery) -> None:
        self.in_flight.pop(delivery.id, None)
        self.acknowledged.append(delivery)

    async def release(self, delivery: Delivery) -> None:
        self.in_flight.pop(delivery.id, None)
        self.queue.append(Delivery(body=delivery.body, id=delivery.id, attempts=delivery.attempts + 1))

    async def recover(self) -> int:
        stranded = list(self.in_flight.values())
        self.in_flight.clear()
        # Oldest first, ahead of anything published since
        self.queue.extendleft(reversed(stranded))
        return len(stranded)


class RedisEventSource(EventSource):
    """Reliable queue on a Redis list.

    Messages move atomically from the queue to a processing list on receive;
    ack removes them, release pushes them back with the attempt count bumped.
    Messages still on the processing list when the source initializes belong
    to a consumer that died mid-delivery and are moved back to the queue.
    Consumers sharing a queue therefore each need their own ``processing``
    list.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        queue: str = "changerelay:events",
        processing: Optional[str] = None,
        recover_in_flight: bool = True,
    ):
        self.redis_url = redis_url
        self.queue = queue
        self.processing = processing or f"{queue}:processing"
        self.recover_in_flight = recover_in_flight
        self.redis = None

    async def initialize(self) -> None:
        import redis.asyncio as redis
        self.redis = redis.from_url(self.redis_url, decode_responses=False)
        await self.redis.ping()
        if self.recover_in_flight:
            recovered = await self.recover()
            if recovered:
                logger.warning(f"Requeued {recovered} unsettled deliveries from {self.processing}")
        logger.info(f"Redis event source initialized: {self.queue}")

    async def recover(self) -> int:
        recovered = 0
        # Newest first onto the head, so the original order is kept
        while await self.redis.lmove(self.processing, self.queue, "RIGHT", "LEFT") is not None:
            recovered += 1
        return recovered

    async def shutdown(self) -> None:
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    @staticmethod
    def _envelope(delivery: Delivery) -> bytes:
        return json.dumps({
            "id": delivery.id,
            "attempts": delivery.attempts,
            "body": delivery.body.decode("utf-8"),
        }).encode("utf-8")

    async def publish(self, body) -> None:
        await self.redis.rpush(self.queue, self._envelope(Delivery(body=_encode(body))))

    async def receive(self, max_messages: int = 10) -> List[Delivery]:
        batch = []
        for _ in range(max_messages):
            raw = await self.redis.lmove(self.queue, self.processing, "LEFT", "RIGHT")
            if raw is None:
                break
            data = json.loads(raw)
            batch_item = Delivery(
                body=data["body"].encode("utf-8"), id=data["id"], attempts=data["attempts"], raw=raw,
            )
            batch.append(batch_item)
        return batch

    async def ack(self, delivery: Delivery) -> None:
        await self.redis.lrem(self.processing, 1, delivery.raw)

    async def release(self, delivery: Delivery) -> None:
        retry = Delivery(body=delivery.body, id=delivery.id, attempts=delivery.attempts + 1)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing, 1, delivery.raw)
            pipe.rpush(self.queue, self._envelope(retry))
            await pipe.execute()


class EventConsumer:
    """Pulls deliveries from a source and acks or releases each one"""

    def __init__(self, source: EventSource, handler: EventHandler, batch_size: int = 10):
        self.source = source
        self.handler = handler
        self.batch_size = batch_size

    async def drain(self) -> ExecutionSummary:
        """Handle everything currently queued; each delivery at most once per call"""
        summary = ExecutionSummary()
        seen = set()
        while True:
            batch = await self.source.receive(self.batch_size)
            if not batch:
                break
            stop = False
            for delivery in batch:
                if delivery.id in seen:
                    # Released earlier in this drain; leave it for the next one
                    await self.source.release(delivery)
                    stop = True
                    continue
                seen.add(delivery.id)
                await self._handle(delivery, summary)
            if stop:
                break
        summary.log()
        return summary

    async def _handle(self, delivery: Delivery, summary: ExecutionSummary) -> None:
        report = await self.handler.handle(delivery.body)
        summary.record(report)
        if report.should_acknowledge:
            await self.source.ack(delivery)
            summary.acknowledged += 1
        else:
            logger.warning(
                f"Releasing delivery {delivery.id} (attempt {delivery.attempts}) for redelivery"
            )
            await self.source.release(delivery)
            summary.released += 1
