"""
Tests for side-effect dispatchers
"""

from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp import test_utils

from changerelay.dispatchers import (
    CANCEL,
    SCHEDULE,
    RecordingDispatcher,
    WebhookNotificationDispatcher,
    WebhookSchedulerDispatcher,
    build_dispatchers,
    meeting_details,
    scheduled_metadata,
    scheduling_action,
)
from changerelay.models import ModificationEntry, ModificationKind, RecordStatus

from helpers import make_record

START = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


def meeting_record(status=RecordStatus.APPROVED):
    return make_record(
        "R1", ["T1"], status,
        include_meeting=True,
        meeting={
            "start_time": START.isoformat(),
            "end_time": (START + timedelta(minutes=30)).isoformat(),
            "organizer": "ops@example.com",
        },
    )


async def start_webhook(responses):
    """Webhook that answers once per idempotency key and records every request"""
    seen = []
    references = {}

    async def receive(request):
        key = request.headers.get("Idempotency-Key")
        seen.append((key, await request.json()))
        if "status" in responses:
            return web.Response(status=responses["status"], text="collaborator down")
        if "body" in responses:
            return web.json_response(responses["body"])
        if key not in references:
            references[key] = {"reference_id": f"ref-{len(references) + 1}", **responses.get("extra", {})}
        return web.json_response(references[key])

    app = web.Application()
    app.router.add_post("/hook", receive)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server, seen


class TestWebhookDispatchers:
    """Test HTTP dispatch against a local aiohttp server"""

    @pytest.mark.asyncio
    async def test_notification_sends_idempotency_key(self):
        server, seen = await start_webhook({})
        dispatcher = WebhookNotificationDispatcher(str(server.make_url("/hook")), timeout=5)
        try:
            first = await dispatcher.dispatch("R1", "T1", {"record_id": "R1"}, "key-1")
            again = await dispatcher.dispatch("R1", "T1", {"record_id": "R1"}, "key-1")
        finally:
            await dispatcher.shutdown()
            await server.close()

        assert first == again == "ref-1"
        assert [key for key, _ in seen] == ["key-1", "key-1"]
        assert seen[0][1] == {"record_id": "R1"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        server, _ = await start_webhook({"status": 503})
        dispatcher = WebhookNotificationDispatcher(str(server.make_url("/hook")), timeout=5)
        try:
            with pytest.raises(RuntimeError, match="HTTP 503"):
                await dispatcher.dispatch("R1", "T1", {}, "key-1")
        finally:
            await dispatcher.shutdown()
            await server.close()

    @pytest.mark.asyncio
    async def test_scheduler_describes_meeting(self):
        server, _ = await start_webhook({"extra": {"join_url": "https://meet.example.com/abc"}})
        dispatcher = WebhookSchedulerDispatcher(str(server.make_url("/hook")), timeout=5)
        record = meeting_record()
        try:
            assert dispatcher.applies_to(record, "T1")
            reference = await dispatcher.dispatch("R1", "T1", {}, "key-2")
        finally:
            await dispatcher.shutdown()
            await server.close()

        metadata = dispatcher.describe(record, "T1", reference)
        assert metadata.reference_id == "ref-1"
        assert metadata.join_url == "https://meet.example.com/abc"
        assert metadata.organizer == "ops@example.com"
        assert metadata.subject == record.title


class TestRecordingDispatcher:

    @pytest.mark.asyncio
    async def test_deduplicates_by_key(self):
        dispatcher = RecordingDispatcher()
        first = await dispatcher.dispatch("R1", "T1", {}, "k")
        second = await dispatcher.dispatch("R1", "T1", {}, "k")
        assert first == second
        assert len(dispatcher.calls) == 2
        assert dispatcher.effects == 1

    @pytest.mark.asyncio
    async def test_fails_then_recovers(self):
        dispatcher = RecordingDispatcher(fail_times=2, error=ConnectionError("refused"))
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await dispatcher.dispatch("R1", "T1", {}, "k")
        assert await dispatcher.dispatch("R1", "T1", {}, "k")

    def test_meeting_applicability(self):
        scheduler = RecordingDispatcher("scheduler", schedules_resource=True)
        assert not scheduler.applies_to(make_record(), "T1")
        assert scheduler.applies_to(meeting_record(), "T1")
        assert not scheduler.applies_to(meeting_record(RecordStatus.SUBMITTED), "T1")
        assert meeting_details(make_record(include_meeting=True)) == {}
        assert scheduler.describe(make_record(status=RecordStatus.APPROVED, include_meeting=True), "T1", "ref") is None


class TestBuildDispatchers:

    def test_defaults_to_recording(self, config):
        dispatchers = build_dispatchers(config)
        assert len(dispatchers) == 1
        assert isinstance(dispatchers[0], RecordingDispatcher)

    def test_webhooks_from_config(self, config):
        config.notification_webhook_url = "http://notify.internal/hook"
        config.scheduler_webhook_url = "http://calendar.internal/hook"
        names = [d.name for d in build_dispatchers(config)]
        assert names == ["notification", "scheduler"]


def booked(record, reference_id="meeting-1", tenant_id="T1"):
    """Record with a meeting already scheduled for the tenant"""
    record.merge_modifications([ModificationEntry(
        kind=ModificationKind.RESOURCE_SCHEDULED,
        tenant_id=tenant_id,
        metadata=scheduled_metadata(record, reference_id),
    )])
    return record


class TestMeetingLifecycle:
    """Test which scheduler action each record state calls for"""

    def test_actions_by_status(self):
        assert scheduling_action(meeting_record(RecordStatus.SUBMITTED), "T1") is None
        assert scheduling_action(meeting_record(), "T1") == SCHEDULE
        assert scheduling_action(booked(meeting_record()), "T1") is None
        assert scheduling_action(meeting_record(RecordStatus.CANCELLED), "T1") is None
        assert scheduling_action(booked(meeting_record(RecordStatus.CANCELLED)), "T1") == CANCEL

    def test_booking_of_another_tenant_is_not_cancelled(self):
        record = booked(meeting_record(RecordStatus.CANCELLED), tenant_id="T2")
        assert scheduling_action(record, "T1") is None
        assert scheduling_action(record, "T2") == CANCEL

    def test_payloads(self):
        scheduler = RecordingDispatcher("scheduler", schedules_resource=True)
        base = {"record_id": "R1", "tenant_id": "T1"}

        schedule = scheduler.build_payload(meeting_record(), "T1", base)
        cancel = scheduler.build_payload(booked(meeting_record(RecordStatus.CANCELLED)), "T1", base)

        assert schedule["action"] == SCHEDULE
        assert schedule["meeting"]["organizer"] == "ops@example.com"
        assert cancel == {**base, "action": CANCEL, "reference_id": "meeting-1"}
        assert "action" not in base

    def test_cancellation_metadata(self):
        scheduler = RecordingDispatcher("scheduler", schedules_resource=True)
        record = booked(meeting_record(RecordStatus.CANCELLED))

        metadata = scheduler.describe(record, "T1", "cancel-9")

        assert metadata.kind == "resource_cancelled"
        assert metadata.reference_id == "meeting-1"
        assert metadata.cancellation_id == "cancel-9"
        assert metadata.reason == "cancelled"

    @pytest.mark.asyncio
    async def test_webhook_cancel_without_response_id_keeps_meeting_reference(self):
        server, seen = await start_webhook({"body": {"status": "cancelled"}})
        dispatcher = WebhookSchedulerDispatcher(str(server.make_url("/hook")), timeout=5)
        record = booked(meeting_record(RecordStatus.CANCELLED))
        payload = dispatcher.build_payload(record, "T1", {"record_id": "R1"})
        try:
            reference = await dispatcher.dispatch("R1", "T1", payload, "key-3")
        finally:
            await dispatcher.shutdown()
            await server.close()

        assert reference == "meeting-1"
        assert seen[0][1] == {"record_id": "R1", "action": "cancel", "reference_id": "meeting-1"}
