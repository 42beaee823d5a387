"""Tests for background audit delivery."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.access.audit_records import AuditRecord
from app.access.audit_writer import AuditWriter
from app.access.exceptions import AuditWriteFailed
from app.access.models import AuditEventType, RequestDetails, ResourceType


def make_record() -> AuditRecord:
    return AuditRecord(
        event_type=AuditEventType.READ,
        resource_type=ResourceType.PATIENT,
        action="SELF_ACCESS",
        description="Patient accessed own all_records",
        request_details=RequestDetails(
            ip_address="10.0.0.9",
            user_agent="pytest",
            endpoint="/patients/patient-1",
            method="GET",
        ),
        user_id="user-patient-1",
        user_role="patient",
        target_patient_id="patient-1",
    )


@pytest.fixture
def mock_ledger():
    ledger = MagicMock()
    ledger.write = AsyncMock(side_effect=lambda record: record)
    return ledger


class TestAuditWriter:

    @pytest.mark.asyncio
    async def test_delivers_to_ledger(self, ledger, repository):
        writer = AuditWriter(ledger)

        for _ in range(3):
            assert writer.submit(make_record()) is True
        await writer.drain()

        assert writer.written == 3
        assert writer.dropped == 0
        assert len(repository) == 3
        assert (await ledger.verify_chain()).valid is True
        await writer.stop()

    @pytest.mark.asyncio
    async def test_submit_starts_worker(self, mock_ledger):
        writer = AuditWriter(mock_ledger)
        assert writer.running is False

        writer.submit(make_record())

        assert writer.running is True
        await writer.stop()
        assert writer.running is False

    @pytest.mark.asyncio
    async def test_emit_is_submit(self, mock_ledger):
        writer = AuditWriter(mock_ledger)

        await writer.emit(make_record())
        await writer.drain()

        mock_ledger.write.assert_awaited_once()
        await writer.stop()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, mock_ledger):
        record = make_record()
        mock_ledger.write = AsyncMock(side_effect=[
            AuditWriteFailed("down", record_id=record.id),
            AuditWriteFailed("down", record_id=record.id),
            record,
        ])
        writer = AuditWriter(mock_ledger, max_retries=3, retry_backoff=0)

        writer.submit(record)
        await writer.drain()

        assert mock_ledger.write.await_count == 3
        assert writer.written == 1
        assert writer.dropped == 0
        await writer.stop()

    @pytest.mark.asyncio
    async def test_drops_after_retries(self, mock_ledger, caplog):
        mock_ledger.write = AsyncMock(side_effect=AuditWriteFailed("down"))
        writer = AuditWriter(mock_ledger, max_retries=2, retry_backoff=0)

        with caplog.at_level(logging.ERROR, logger="app.access.audit_writer"):
            writer.submit(make_record())
            await writer.drain()

        assert mock_ledger.write.await_count == 3
        assert writer.dropped == 1
        assert "dropped after 3 attempts" in caplog.text
        await writer.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_kill_worker(self, mock_ledger):
        mock_ledger.write = AsyncMock(side_effect=[ValueError("bug"), make_record()])
        writer = AuditWriter(mock_ledger, retry_backoff=0)

        writer.submit(make_record())
        writer.submit(make_record())
        await writer.drain()

        assert writer.dropped == 1
        assert writer.written == 1
        assert writer.running is True
        await writer.stop()

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self, mock_ledger):
        writer = AuditWriter(mock_ledger, max_queue=1)

        assert writer.submit(make_record()) is True
        assert writer.submit(make_record()) is False
        assert writer.dropped == 1

        await writer.drain()
        assert writer.written == 1
        await writer.stop()

    def test_submit_without_event_loop(self, mock_ledger):
        writer = AuditWriter(mock_ledger)

        assert writer.submit(make_record()) is False
        assert writer.dropped == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_queue(self, mock_ledger):
        writer = AuditWriter(mock_ledger)
        for _ in range(5):
            writer.submit(make_record())

        await writer.stop()

        assert writer.written == 5
        assert writer.pending == 0
