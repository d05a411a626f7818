"""IP reputation gate: active-entry semantics, uniqueness and paired audit trail."""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from insightboard.core.errors import AlreadyBlacklisted, NotFound
from insightboard.db.database import AsyncSessionLocal
from insightboard.db.models import AuditLog, IPBlacklistEntry, SecurityEvent
from insightboard.models.schemas import Severity
from insightboard.services.ip_gate import IPReputationGate
from insightboard.utils.clock import utcnow


@pytest.fixture
def gate(app):
    return app.state.ip_gate


async def blacklist(gate, ip, **kwargs):
    async with AsyncSessionLocal() as db:
        entry = await gate.add(db, ip, "test block", **kwargs)
        await db.commit()
        return entry


async def count_rows(model, *where):
    async with AsyncSessionLocal() as db:
        return (await db.execute(select(func.count(model.id)).where(*where))).scalar_one()


class TestIsBlocked:
    async def test_unknown_ip_is_not_blocked(self, gate):
        assert await gate.is_blocked("198.51.100.1") is False

    async def test_permanent_entry_blocks(self, gate):
        await blacklist(gate, "10.0.0.5", is_permanent=True)
        assert await gate.is_blocked("10.0.0.5") is True

    async def test_repeated_checks_are_stable(self, gate):
        await blacklist(gate, "10.0.0.6", duration_hours=1)
        results = [await gate.is_blocked("10.0.0.6") for _ in range(5)]
        assert results == [True] * 5
        assert [await gate.is_blocked("10.0.0.7") for _ in range(3)] == [False] * 3

    async def test_unknown_literal_is_never_blocked(self, gate):
        assert await gate.is_blocked("unknown") is False
        assert await gate.is_blocked("") is False

    async def test_expired_entry_is_inactive_but_kept(self, app, recorder):
        future = utcnow() + timedelta(hours=3)
        late_gate = IPReputationGate(AsyncSessionLocal, recorder, clock=lambda: future)
        entry = await blacklist(app.state.ip_gate, "10.0.0.8", duration_hours=2)

        assert await app.state.ip_gate.is_blocked("10.0.0.8") is True
        assert await late_gate.is_blocked("10.0.0.8") is False
        assert entry.is_active_at(future) is False
        assert await count_rows(IPBlacklistEntry, IPBlacklistEntry.ip_address == "10.0.0.8") == 1


class TestAdd:
    async def test_duplicate_active_entry_is_rejected(self, gate):
        await blacklist(gate, "10.0.0.9", is_permanent=True)
        with pytest.raises(AlreadyBlacklisted):
            await blacklist(gate, "10.0.0.9", duration_hours=5)
        assert await count_rows(IPBlacklistEntry, IPBlacklistEntry.ip_address == "10.0.0.9") == 1

    async def test_expired_entry_allows_a_new_block(self, app, recorder):
        past = utcnow() - timedelta(hours=48)
        early_gate = IPReputationGate(AsyncSessionLocal, recorder, clock=lambda: past)
        await blacklist(early_gate, "10.0.0.10", duration_hours=1)

        await blacklist(app.state.ip_gate, "10.0.0.10", duration_hours=1)
        assert await count_rows(IPBlacklistEntry, IPBlacklistEntry.ip_address == "10.0.0.10") == 2

    async def test_add_records_event_and_audit(self, gate, recorder):
        entry = await blacklist(gate, "10.0.0.11", is_permanent=True, severity=Severity.HIGH)
        await recorder.drain()

        async with AsyncSessionLocal() as db:
            event = (
                await db.execute(select(SecurityEvent).where(SecurityEvent.ip_address == "10.0.0.11"))
            ).scalar_one()
            audit = (
                await db.execute(select(AuditLog).where(AuditLog.action == "IP_BLACKLIST_ADD"))
            ).scalar_one()
        assert event.event_type == "IP_BLOCKED"
        assert event.severity == "HIGH"
        assert event.details["entry_id"] == entry.id
        assert audit.resource_id == str(entry.id)

    async def test_temporary_block_defaults_to_a_day(self, gate):
        entry = await blacklist(gate, "10.0.0.12")
        assert entry.is_permanent is False
        delta = entry.blocked_until - entry.blocked_at
        assert delta == timedelta(hours=24)


class TestRemove:
    async def test_remove_unblocks(self, gate, recorder):
        entry = await blacklist(gate, "10.0.0.13", is_permanent=True)
        async with AsyncSessionLocal() as db:
            await gate.remove(db, entry.id, removed_by=None)
            await db.commit()
        await recorder.drain()

        assert await gate.is_blocked("10.0.0.13") is False
        assert await count_rows(SecurityEvent, SecurityEvent.event_type == "IP_UNBLOCKED") == 1
        assert await count_rows(AuditLog, AuditLog.action == "IP_BLACKLIST_REMOVE") == 1

    async def test_remove_missing_entry(self, gate):
        async with AsyncSessionLocal() as db:
            with pytest.raises(NotFound):
                await gate.remove(db, 9999)


class TestListing:
    async def test_counts_and_active_filter(self, app, recorder):
        past = utcnow() - timedelta(hours=48)
        early_gate = IPReputationGate(AsyncSessionLocal, recorder, clock=lambda: past)
        await blacklist(early_gate, "10.0.1.1", duration_hours=1)
        await blacklist(app.state.ip_gate, "10.0.1.2", is_permanent=True)

        async with AsyncSessionLocal() as db:
            assert await app.state.ip_gate.count(db) == (2, 1)
            total, entries = await app.state.ip_gate.list_entries(db, active_only=True)
        assert total == 1
        assert [e.ip_address for e in entries] == ["10.0.1.2"]
