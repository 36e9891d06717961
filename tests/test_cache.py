"""
Tests for CacheStore: TTL hits, forced refresh, stale fallback and the
single in-flight fetch per scope.
"""

import asyncio
from datetime import timedelta

import pytest

from assignment_calendar_sync.cache import CacheStore
from assignment_calendar_sync.cache import clamp_ttl
from assignment_calendar_sync.models import CacheMiss
from assignment_calendar_sync.models import CachePolicy
from assignment_calendar_sync.models import FetchFailure
from assignment_calendar_sync.models import FetchFailureKind
from assignment_calendar_sync.models import Scope
from tests.conftest import COURSE_A
from tests.conftest import COURSE_B
from tests.conftest import NOW
from tests.conftest import make_assignment


def _store(remote, clock, **kwargs):
    return CacheStore(remote.fetch_assignments, clock=clock, name="assignments", **kwargs)


class TestTtl:
    def test_clamped_to_window(self):
        assert clamp_ttl(timedelta(minutes=1)) == timedelta(minutes=5)
        assert clamp_ttl(timedelta(hours=2)) == timedelta(minutes=15)
        assert clamp_ttl(timedelta(minutes=7)) == timedelta(minutes=7)


class TestGet:
    @pytest.mark.asyncio
    async def test_fresh_entry_served_without_fetch(self, remote, clock):
        store = _store(remote, clock)
        first, _ = await store.get(Scope.all())
        second, status = await store.get(Scope.all())

        assert len(remote.calls) == 1
        assert [a.id for a in second] == [a.id for a in first] == [1, 2]
        assert status.last_fetched_at == NOW
        assert status.entity_count == 2
        assert not status.is_stale

    @pytest.mark.asyncio
    async def test_forced_refresh_always_fetches(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        remote.set(make_assignment(3))
        items, _ = await store.get(Scope.all(), CachePolicy.forced())
        assert len(remote.calls) == 2
        assert [a.id for a in items] == [3]

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, remote, clock):
        store = _store(remote, clock, ttl=timedelta(minutes=10))
        await store.get(Scope.all())
        clock.advance(timedelta(minutes=9))
        await store.get(Scope.all())
        assert len(remote.calls) == 1

        clock.advance(timedelta(minutes=2))
        assert store.status(Scope.all()).is_stale
        _, status = await store.get(Scope.all())
        assert len(remote.calls) == 2
        assert status.last_fetched_at == NOW + timedelta(minutes=11)

    @pytest.mark.asyncio
    async def test_policy_ttl_overrides_store_ttl(self, remote, clock):
        store = _store(remote, clock, ttl=timedelta(minutes=15))
        await store.get(Scope.all())
        clock.advance(timedelta(minutes=2))
        await store.get(Scope.all(), CachePolicy(ttl=timedelta(minutes=1)))
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_scopes_are_cached_separately(self, remote, clock):
        remote.set(make_assignment(1, course_id=COURSE_A), make_assignment(2, course_id=COURSE_B))
        store = _store(remote, clock)
        a_items, _ = await store.get(Scope.course(COURSE_A))
        b_items, _ = await store.get(Scope.course(COURSE_B))
        assert [a.id for a in a_items] == [1]
        assert [a.id for a in b_items] == [2]
        assert set(store.scopes()) == {Scope.course(COURSE_A), Scope.course(COURSE_B)}


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_refresh_serves_stale_data(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        remote.failure = FetchFailure(FetchFailureKind.NETWORK, "offline")
        clock.advance(timedelta(minutes=1))

        items, status = await store.get(Scope.all(), CachePolicy.forced())

        assert [a.id for a in items] == [1, 2]
        assert status.is_stale
        assert status.last_fetched_at == NOW
        assert status.last_error == "offline"

    @pytest.mark.asyncio
    async def test_successful_refresh_clears_error(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        remote.failure = FetchFailure(FetchFailureKind.SERVER_ERROR)
        await store.get(Scope.all(), CachePolicy.forced())
        remote.failure = None
        _, status = await store.get(Scope.all(), CachePolicy.forced())
        assert status.last_error is None
        assert not status.is_stale

    @pytest.mark.asyncio
    async def test_failure_with_no_data_is_cache_miss(self, remote, clock):
        remote.failure = FetchFailure(FetchFailureKind.AUTH, "bad token")
        store = _store(remote, clock)
        with pytest.raises(CacheMiss) as excinfo:
            await store.get(Scope.course(COURSE_A))
        assert excinfo.value.scope == Scope.course(COURSE_A)
        assert excinfo.value.cause.kind == FetchFailureKind.AUTH

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self, remote, clock):
        remote.delay = 1.0
        store = _store(remote, clock, fetch_timeout=0.01)
        with pytest.raises(CacheMiss) as excinfo:
            await store.get(Scope.all())
        assert excinfo.value.cause.kind == FetchFailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_unexpected_error_serves_stale_data(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        remote.failure = KeyError("id")

        items, status = await store.get(Scope.all(), CachePolicy.forced())

        assert [a.id for a in items] == [1, 2]
        assert status.is_stale
        assert "KeyError" in status.last_error

    @pytest.mark.asyncio
    async def test_unexpected_error_with_no_data_is_cache_miss(self, remote, clock):
        remote.failure = ValueError("Invalid isoformat string")
        store = _store(remote, clock)
        with pytest.raises(CacheMiss) as excinfo:
            await store.get(Scope.all())
        assert excinfo.value.cause.kind == FetchFailureKind.SERVER_ERROR
        assert isinstance(excinfo.value.cause.__cause__, ValueError)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_fetch(self, remote, clock):
        remote.delay = 0.05
        store = _store(remote, clock)
        results = await asyncio.gather(*(store.get(Scope.all()) for _ in range(5)))
        assert len(remote.calls) == 1
        assert all([a.id for a in items] == [1, 2] for items, _ in results)

    @pytest.mark.asyncio
    async def test_status_reports_refresh_in_progress(self, remote, clock):
        remote.delay = 0.05
        store = _store(remote, clock)
        task = asyncio.create_task(store.get(Scope.all()))
        await asyncio.sleep(0)
        assert store.status(Scope.all()).is_refreshing
        await task
        assert not store.status(Scope.all()).is_refreshing


class TestMutation:
    @pytest.mark.asyncio
    async def test_clear_forces_next_fetch(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        store.clear(Scope.all())
        assert store.peek(Scope.all()) == []
        assert not store.status(Scope.all()).has_data
        await store.get(Scope.all())
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_update_entities_touches_every_scope(self, remote, clock):
        store = _store(remote, clock)
        await store.get(Scope.all())
        await store.get(Scope.course(COURSE_A))

        changed = store.update_entities(lambda a: a.with_read() if a.id == 1 else a)

        assert changed == 2
        for scope in (Scope.all(), Scope.course(COURSE_A)):
            by_id = {a.id: a for a in store.peek(scope)}
            assert by_id[1].is_read
            assert not by_id[2].is_read
        assert len(remote.calls) == 2
