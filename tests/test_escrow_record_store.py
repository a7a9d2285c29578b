"""
Record store tests against a real SQLite database
Compare-and-swap writes, code lookups and the partial unique index on exchange codes
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from models import EscrowStatus, EscrowTransaction
from services.escrow_record_store import DuplicateRecordError
from utils.exception_handler import ConflictError


def make_record(escrow_id, code="BTC-123456", status=EscrowStatus.PENDING.value, created_at=NOW, **overrides):
    values = dict(
        id=escrow_id,
        requester_id="user-1",
        agent_id="agent-1",
        bitcoin_amount=25_000,
        local_amount=Decimal("48000.50"),
        currency="KES",
        escrow_address=f"bc1q{escrow_id.lower()}",
        exchange_code=code,
        status=status,
        version=1,
        created_at=created_at,
        expires_at=created_at + timedelta(hours=24),
    )
    values.update(overrides)
    return EscrowTransaction(**values)


class TestSave:

    @pytest.mark.asyncio
    async def test_insert_and_read_back(self, record_store):
        await record_store.save(make_record("ESC1"))

        stored = await record_store.find_by_id("ESC1")
        assert stored.status == EscrowStatus.PENDING.value
        assert stored.local_amount == Decimal("48000.50")
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_conditional_write_bumps_version(self, record_store):
        await record_store.save(make_record("ESC1"))
        record = await record_store.find_by_id("ESC1")

        record.status = EscrowStatus.FUNDED.value
        record.funded_at = NOW
        await record_store.save(record, expected_status=EscrowStatus.PENDING.value)

        stored = await record_store.find_by_id("ESC1")
        assert stored.status == EscrowStatus.FUNDED.value
        assert stored.funded_at == NOW
        assert stored.version == record.version == 2

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, record_store):
        await record_store.save(make_record("ESC1"))
        first = await record_store.find_by_id("ESC1")
        second = await record_store.find_by_id("ESC1")

        first.status = EscrowStatus.FUNDED.value
        await record_store.save(first, expected_status=EscrowStatus.PENDING.value)

        second.status = EscrowStatus.EXPIRED.value
        with pytest.raises(ConflictError):
            await record_store.save(second, expected_status=EscrowStatus.PENDING.value)
        assert (await record_store.find_by_id("ESC1")).status == EscrowStatus.FUNDED.value

    @pytest.mark.asyncio
    async def test_wrong_expected_status_conflicts(self, record_store):
        await record_store.save(make_record("ESC1"))
        record = await record_store.find_by_id("ESC1")

        record.status = EscrowStatus.COMPLETED.value
        with pytest.raises(ConflictError):
            await record_store.save(record, expected_status=EscrowStatus.FUNDED.value)

    @pytest.mark.asyncio
    async def test_duplicate_active_code_rejected(self, record_store):
        await record_store.save(make_record("ESC1", code="BTC-555555"))
        with pytest.raises(DuplicateRecordError):
            await record_store.save(make_record("ESC2", code="BTC-555555"))

    @pytest.mark.asyncio
    async def test_code_reused_once_terminal(self, record_store):
        await record_store.save(make_record("ESC1", code="BTC-555555", status=EscrowStatus.EXPIRED.value))
        await record_store.save(make_record("ESC2", code="BTC-555555"))

        assert (await record_store.find_by_id("ESC2")).exchange_code == "BTC-555555"

    @pytest.mark.asyncio
    async def test_duplicate_address_rejected(self, record_store):
        await record_store.save(make_record("ESC1", code="BTC-111111", escrow_address="bc1qsame"))
        with pytest.raises(DuplicateRecordError):
            await record_store.save(make_record("ESC2", code="BTC-222222", escrow_address="bc1qsame"))


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_by_code_prefers_active_holder(self, record_store):
        await record_store.save(make_record("OLD", code="BTC-777777", status=EscrowStatus.COMPLETED.value,
                                            created_at=NOW + timedelta(hours=1)))
        await record_store.save(make_record("NEW", code="BTC-777777", status=EscrowStatus.FUNDED.value))

        assert (await record_store.find_by_code("BTC-777777")).id == "NEW"

    @pytest.mark.asyncio
    async def test_find_by_code_falls_back_to_latest_terminal(self, record_store):
        await record_store.save(make_record("A", code="BTC-777777", status=EscrowStatus.EXPIRED.value))
        await record_store.save(make_record("B", code="BTC-777777", status=EscrowStatus.COMPLETED.value,
                                            created_at=NOW + timedelta(days=2)))

        assert (await record_store.find_by_code("BTC-777777")).id == "B"
        assert await record_store.find_by_code("BTC-000000") is None

    @pytest.mark.asyncio
    async def test_find_expired_only_active(self, record_store):
        await record_store.save(make_record("P", code="BTC-100001"))
        await record_store.save(make_record("F", code="BTC-100002", status=EscrowStatus.FUNDED.value))
        await record_store.save(make_record("C", code="BTC-100003", status=EscrowStatus.COMPLETED.value))
        await record_store.save(make_record("L", code="BTC-100004", created_at=NOW + timedelta(days=3)))

        expired = await record_store.find_expired(NOW + timedelta(hours=25))
        assert sorted(record.id for record in expired) == ["F", "P"]
        assert len(await record_store.find_expired(NOW + timedelta(hours=25), limit=1)) == 1

    @pytest.mark.asyncio
    async def test_find_expired_pages_by_key(self, record_store):
        # A and B share an expiry, so the id breaks the tie
        await record_store.save(make_record("B", code="BTC-300002"))
        await record_store.save(make_record("A", code="BTC-300001"))
        await record_store.save(make_record("C", code="BTC-300003", created_at=NOW + timedelta(minutes=5)))
        cutoff = NOW + timedelta(hours=25)

        first = await record_store.find_expired(cutoff, limit=2)
        assert [record.id for record in first] == ["A", "B"]

        second = await record_store.find_expired(cutoff, limit=2, after=(first[-1].expires_at, first[-1].id))
        assert [record.id for record in second] == ["C"]

        last = await record_store.find_expired(cutoff, limit=2, after=(second[-1].expires_at, second[-1].id))
        assert last == []

    @pytest.mark.asyncio
    async def test_find_stale_claims(self, record_store):
        await record_store.save(make_record("CLAIMED", code="BTC-200001", status=EscrowStatus.FUNDED.value,
                                            processing_operation="release", claimed_at=NOW))
        await record_store.save(make_record("FREE", code="BTC-200002", status=EscrowStatus.FUNDED.value))

        stale = await record_store.find_stale_claims(NOW + timedelta(minutes=20))
        assert [record.id for record in stale] == ["CLAIMED"]
        assert await record_store.find_stale_claims(NOW) == []

    @pytest.mark.asyncio
    async def test_find_pending(self, record_store):
        await record_store.save(make_record("P", code="BTC-300001"))
        await record_store.save(make_record("F", code="BTC-300002", status=EscrowStatus.FUNDED.value))

        assert [record.id for record in await record_store.find_pending()] == ["P"]

    @pytest.mark.asyncio
    async def test_lists_newest_first(self, record_store):
        await record_store.save(make_record("E1", code="BTC-400001"))
        await record_store.save(make_record("E2", code="BTC-400002", created_at=NOW + timedelta(minutes=5)))
        await record_store.save(make_record("E3", code="BTC-400003", requester_id="user-2", agent_id="agent-2"))

        assert [r.id for r in await record_store.list_by_requester("user-1")] == ["E2", "E1"]
        assert [r.id for r in await record_store.list_by_agent("agent-2")] == ["E3"]
