"""
Tests for administrative operations
"""

import pytest

from changerelay.admin import AdminService
from changerelay.dispatchers import RecordingDispatcher
from changerelay.errors import ConflictExhaustedError, VersionConflictError
from changerelay.models import ModificationKind, Record, RecordStatus, trigger_key
from changerelay.optimistic import OptimisticUpdater
from changerelay.processor import TriggerProcessor, create_trigger

from helpers import make_record, no_sleep, seed


@pytest.fixture
def admin(processor):
    return AdminService(processor, max_concurrency=2)


class TestSubmit:
    """Test record submission"""

    @pytest.mark.asyncio
    async def test_submit_archives_and_triggers(self, store, admin):
        record = Record(id="R1", tenants=["T1", "T2"], title="Firewall change")

        summary = await admin.submit(record, actor="alice")

        assert summary.succeeded == 2
        stored = await admin.load("R1")
        assert stored.status == RecordStatus.SUBMITTED
        assert [e.kind for e in stored.modifications] == [ModificationKind.CREATED, ModificationKind.SUBMITTED]
        assert await store.exists(trigger_key("T1", "R1"))
        assert await store.exists(trigger_key("T2", "R1"))

    @pytest.mark.asyncio
    async def test_submit_twice_refused(self, admin):
        await admin.submit(Record(id="R1", tenants=["T1"]), actor="alice")
        with pytest.raises(VersionConflictError):
            await admin.submit(Record(id="R1", tenants=["T1"]), actor="bob")

    @pytest.mark.asyncio
    async def test_submit_requires_tenants(self, admin):
        with pytest.raises(ValueError):
            await admin.submit(Record(id="R1"), actor="alice")


class TestChangeStatus:
    """Test status transitions"""

    @pytest.mark.asyncio
    async def test_approval_retriggers_processed_tenants(self, store, admin, notifier):
        await seed(store, make_record("R1", ["T1"]))
        await admin.processor.process("T1", "R1")

        summary = await admin.change_status("R1", RecordStatus.APPROVED, actor="carol")

        assert summary.succeeded == 1
        record = await admin.load("R1")
        assert record.status == RecordStatus.APPROVED
        assert not record.processed_for("T1")

        await admin.processor.process("T1", "R1")
        assert len(notifier.calls) == 2
        assert notifier.calls[0][3] != notifier.calls[1][3]

    @pytest.mark.asyncio
    async def test_pending_trigger_is_skipped(self, store, admin):
        await seed(store, make_record("R1", ["T1"]))

        summary = await admin.change_status("R1", RecordStatus.APPROVED, actor="carol")

        assert summary.skipped == 1
        assert summary.result_for("T1").error == "trigger already pending"

    @pytest.mark.asyncio
    async def test_draft_does_not_trigger(self, store, admin):
        await seed(store, make_record("R1", ["T1"]), triggers=False)

        summary = await admin.change_status("R1", RecordStatus.DRAFT, actor="carol")

        assert summary.total == 0
        record = await admin.load("R1")
        assert record.modifications[-1].kind == ModificationKind.UPDATED

    @pytest.mark.asyncio
    async def test_exhausted_conflicts_propagate(self, store, config):
        class Contended(type(store)):
            async def put_if_version(self, key, value, expected_version):
                if expected_version is not None:
                    raise VersionConflictError(key, expected_version)
                return await super().put_if_version(key, value, expected_version)

        contended = Contended()
        await seed(contended, make_record("R1", ["T1"]), triggers=False)

        processor = TriggerProcessor(
            contended, [RecordingDispatcher()],
            OptimisticUpdater(contended, retry=config.retry_policy, sleep=no_sleep), config,
        )
        with pytest.raises(ConflictExhaustedError):
            await AdminService(processor).change_status("R1", RecordStatus.APPROVED, actor="carol")


class TestDrain:
    """Test bulk processing of pending triggers"""

    @pytest.mark.asyncio
    async def test_pending_grouped_by_tenant(self, store, admin):
        await seed(store, make_record("R1", ["T1", "T2"]))
        await seed(store, make_record("R2", ["T1"]))

        assert await admin.pending_triggers() == {"T1": ["R1", "R2"], "T2": ["R1"]}
        assert await admin.pending_triggers("T2") == {"T2": ["R1"]}

    @pytest.mark.asyncio
    async def test_drain_isolates_failing_tenant(self, store, admin, notifier):
        """Test a tenant whose archive is missing fails alone"""
        await seed(store, make_record("R1", ["A", "C"]))
        await create_trigger(store, "B", "R404")

        summary = await admin.drain(tenant_names={"A": "Acme"})

        assert (summary.total, summary.succeeded, summary.failed) == (3, 2, 1)
        assert "R404" in summary.result_for("B").error
        assert summary.result_for("A").value == 1
        assert summary.exit_code == 1
        assert await admin.pending_triggers() == {"B": ["R404"]}

    @pytest.mark.asyncio
    async def test_drain_explicit_tenants_skips_idle(self, store, admin):
        await seed(store, make_record("R1", ["T1"]))

        summary = await admin.drain(["T1", "T9"])

        assert (summary.succeeded, summary.skipped, summary.failed) == (1, 1, 0)
        assert summary.exit_code == 0
