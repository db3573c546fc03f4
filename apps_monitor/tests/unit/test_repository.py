"""Tests for the state store repositories against file-backed SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from conftest import T0, make_log, make_trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps_monitor.models.alert import AlertEntity, AlertState, SlackAlertData
from apps_monitor.models.query import Query, QueryType
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import InsertTelemetryResult, LogsData, QueryState, TelemetryEntity, TraceData
from apps_monitor.state.repository import (
    AlertRepository,
    QueryCursorRepository,
    SubscriptionRepository,
    TelemetryRepository,
)

SessionFactory = async_sessionmaker[AsyncSession]


async def _insert(
    factory: SessionFactory,
    so: ServiceOwner,
    query: Query,
    search_to: datetime,
    batch: list[TelemetryEntity],
) -> InsertTelemetryResult:
    async with factory() as session:
        result = await TelemetryRepository(session).insert_telemetry(so, query, search_to, batch)
        await session.commit()
    return result


async def _cursor(factory: SessionFactory, so: ServiceOwner, query: Query) -> QueryState | None:
    async with factory() as session:
        return await QueryCursorRepository(session).get(so, query)


async def _telemetry(factory: SessionFactory, so: ServiceOwner | None = None) -> list[TelemetryEntity]:
    async with factory() as session:
        return await TelemetryRepository(session).list_telemetry(so)


# ---------------------------------------------------------------------------
# insert_telemetry
# ---------------------------------------------------------------------------


class TestInsertTelemetry:
    @pytest.mark.asyncio
    async def test_inserts_new_rows(self, session_factory: SessionFactory, skd: ServiceOwner, query: Query) -> None:
        batch = [make_trace("a", time_ingested=T0), make_log("b", time_ingested=T0)]

        result = await _insert(session_factory, skd, query, T0, batch)

        assert result.written == 2
        assert len(result.ids) == 2
        assert result.dupe_ext_ids == []
        rows = await _telemetry(session_factory)
        assert [r.ext_id for r in rows] == ["a", "b"]
        assert isinstance(rows[0].data, TraceData)
        assert isinstance(rows[1].data, LogsData)
        assert all(r.dupe_count == 0 and not r.seeded for r in rows)
        assert rows[0].time_ingested == T0

    @pytest.mark.asyncio
    async def test_reingestion_counts_dupes(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        first = T0
        second = T0 + timedelta(minutes=10)
        await _insert(session_factory, skd, query, T0, [make_trace("a", time_ingested=first)])

        replay = make_trace("a", time_ingested=second, span_name="changed")
        result = await _insert(session_factory, skd, query, T0, [replay, make_trace("c", time_ingested=second)])

        assert result.written == 1
        assert result.dupe_ext_ids == ["a"]
        rows = {r.ext_id: r for r in await _telemetry(session_factory)}
        assert rows["a"].dupe_count == 1
        assert rows["a"].time_ingested == first
        assert isinstance(rows["a"].data, TraceData)
        assert rows["a"].data.span_name != "changed"
        assert rows["c"].dupe_count == 0

    @pytest.mark.asyncio
    async def test_same_batch_twice_is_idempotent(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        ext_ids = ["a", "b", "c"]
        await _insert(session_factory, skd, query, T0, [make_trace(e, time_ingested=T0) for e in ext_ids])
        later = T0 + timedelta(seconds=1)
        result = await _insert(session_factory, skd, query, T0, [make_trace(e, time_ingested=later) for e in ext_ids])

        assert result.written == 0
        assert sorted(result.dupe_ext_ids) == ext_ids
        rows = await _telemetry(session_factory)
        assert len(rows) == 3
        assert sum(r.dupe_count for r in rows) == 3

    @pytest.mark.asyncio
    async def test_same_ext_id_across_tenants_is_isolated(
        self,
        session_factory: SessionFactory,
        skd: ServiceOwner,
        ttd: ServiceOwner,
        query: Query,
    ) -> None:
        await _insert(session_factory, skd, query, T0, [make_trace("shared", time_ingested=T0)])
        result = await _insert(
            session_factory,
            ttd,
            query,
            T0,
            [make_trace("shared", service_owner="ttd", time_ingested=T0 + timedelta(minutes=1))],
        )

        assert result.written == 1
        assert len(await _telemetry(session_factory)) == 2
        assert [r.service_owner for r in await _telemetry(session_factory, ttd)] == ["ttd"]

    @pytest.mark.asyncio
    async def test_repeated_ext_id_within_batch_collapsed(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        batch = [make_trace("a", time_ingested=T0), make_trace("a", time_ingested=T0)]
        result = await _insert(session_factory, skd, query, T0, batch)
        assert result.written == 1
        assert len(await _telemetry(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_mixed_time_ingested_rejected(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        batch = [make_trace("a", time_ingested=T0), make_trace("b", time_ingested=T0 + timedelta(seconds=1))]
        async with session_factory() as session:
            with pytest.raises(ValueError, match="share one"):
                await TelemetryRepository(session).insert_telemetry(skd, query, T0, batch)

    @pytest.mark.asyncio
    async def test_unstamped_batch_rejected(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="non-null"):
                await TelemetryRepository(session).insert_telemetry(skd, query, T0, [make_trace("a")])

    @pytest.mark.asyncio
    async def test_rollback_leaves_nothing_behind(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        async with session_factory() as session:
            await TelemetryRepository(session).insert_telemetry(skd, query, T0, [make_trace("a", time_ingested=T0)])
            await session.rollback()

        assert await _telemetry(session_factory) == []
        assert await _cursor(session_factory, skd, query) is None


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------


class TestQueryCursor:
    @pytest.mark.asyncio
    async def test_cursor_is_newest_written_time_generated(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        batch = [
            make_trace("a", time_generated=T0 - timedelta(minutes=15), time_ingested=T0),
            make_trace("b", time_generated=T0 - timedelta(minutes=10), time_ingested=T0),
        ]
        await _insert(session_factory, skd, query, T0, batch)

        state = await _cursor(session_factory, skd, query)
        assert state is not None
        assert state.queried_until == T0 - timedelta(minutes=10)
        assert state.name == query.name
        assert state.hash == query.hash

    @pytest.mark.asyncio
    async def test_empty_batch_moves_cursor_to_search_to(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        result = await _insert(session_factory, skd, query, T0, [])
        assert result.written == 0
        state = await _cursor(session_factory, skd, query)
        assert state is not None
        assert state.queried_until == T0

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        await _insert(session_factory, skd, query, T0, [])
        await _insert(session_factory, skd, query, T0 - timedelta(hours=1), [])

        state = await _cursor(session_factory, skd, query)
        assert state is not None
        assert state.queried_until == T0

    @pytest.mark.asyncio
    async def test_renamed_query_keeps_cursor(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        await _insert(session_factory, skd, query, T0, [])
        renamed = Query(name="Renamed", type=query.type, template=query.template)
        await _insert(session_factory, skd, renamed, T0 + timedelta(minutes=5), [])

        async with session_factory() as session:
            states = await QueryCursorRepository(session).list_query_states(skd)
        assert len(states) == 1
        assert states[0].name == "Renamed"
        assert states[0].queried_until == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_list_query_states_filters(
        self,
        session_factory: SessionFactory,
        skd: ServiceOwner,
        ttd: ServiceOwner,
        query: Query,
    ) -> None:
        other = Query(name="Other", type=QueryType.LOGS, template="logs {search_from} {search_to}")
        await _insert(session_factory, skd, query, T0, [])
        await _insert(session_factory, skd, other, T0, [])
        await _insert(session_factory, ttd, query, T0, [])

        async with session_factory() as session:
            repo = QueryCursorRepository(session)
            assert len(await repo.list_query_states()) == 3
            assert len(await repo.list_query_states(skd)) == 2
            narrowed = await repo.list_query_states(skd, other)
            assert [s.name for s in narrowed] == ["Other"]

    @pytest.mark.asyncio
    async def test_query_filter_requires_service_owner(self, session_factory: SessionFactory, query: Query) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="requires a service owner"):
                await QueryCursorRepository(session).list_query_states(query=query)


# ---------------------------------------------------------------------------
# Polling scenario
# ---------------------------------------------------------------------------


class TestPollingScenario:
    @pytest.mark.asyncio
    async def test_two_polls_then_replay(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        poll1_at = T0
        poll1 = [
            make_trace("e1", time_generated=T0 - timedelta(minutes=15), time_ingested=poll1_at),
            make_trace("e2", time_generated=T0 - timedelta(minutes=10), time_ingested=poll1_at),
        ]
        await _insert(session_factory, skd, query, T0 - timedelta(minutes=5), poll1)
        state = await _cursor(session_factory, skd, query)
        assert state is not None and state.queried_until == T0 - timedelta(minutes=10)

        poll2_at = T0 + timedelta(minutes=10)
        poll2 = [make_trace("e3", time_generated=T0 - timedelta(minutes=5), time_ingested=poll2_at)]
        await _insert(session_factory, skd, query, T0, poll2)
        state = await _cursor(session_factory, skd, query)
        assert state is not None and state.queried_until == T0 - timedelta(minutes=5)

        rows = await _telemetry(session_factory)
        assert len(rows) == 3
        assert all(r.dupe_count == 0 for r in rows)

        replay_at = T0 + timedelta(minutes=20)
        replay = [item.stamped(replay_at) for item in poll1]
        result = await _insert(session_factory, skd, query, T0 - timedelta(minutes=5), replay)

        assert result.written == 0
        rows = {r.ext_id: r for r in await _telemetry(session_factory)}
        assert len(rows) == 3
        assert rows["e1"].dupe_count == 1
        assert rows["e2"].dupe_count == 1
        assert rows["e3"].dupe_count == 0
        state = await _cursor(session_factory, skd, query)
        assert state is not None and state.queried_until == T0 - timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Seeding and alerter work items
# ---------------------------------------------------------------------------


class TestSeededTelemetry:
    @pytest.mark.asyncio
    async def test_seeded_rows_flagged_and_counted(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            repo = TelemetryRepository(session)
            assert not await repo.has_any_telemetry()
            count = await repo.seed_telemetry([make_trace("s1", time_ingested=T0), make_trace("s2", time_ingested=T0)])
            await session.commit()
        assert count == 2

        async with session_factory() as session:
            repo = TelemetryRepository(session)
            assert await repo.has_any_telemetry()
            assert await repo.count_telemetry() == 2
            assert await repo.count_telemetry(seeded=True) == 2
            assert await repo.count_telemetry(seeded=False) == 0

    @pytest.mark.asyncio
    async def test_seeded_rows_are_dupes_for_live_polling(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        async with session_factory() as session:
            await TelemetryRepository(session).seed_telemetry([make_trace("s1", time_ingested=T0)])
            await session.commit()

        result = await _insert(
            session_factory, skd, query, T0, [make_trace("s1", time_ingested=T0 + timedelta(days=1))]
        )
        assert result.written == 0
        assert result.dupe_ext_ids == ["s1"]

    @pytest.mark.asyncio
    async def test_seed_requires_time_ingested(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="no time_ingested"):
                await TelemetryRepository(session).seed_telemetry([make_trace("s1")])


class TestAlerterWorkItems:
    @pytest.mark.asyncio
    async def test_excludes_seeded_and_alerted(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        async with session_factory() as session:
            await TelemetryRepository(session).seed_telemetry([make_trace("seeded", time_ingested=T0)])
            await session.commit()
        await _insert(
            session_factory,
            skd,
            query,
            T0,
            [make_trace(e, time_ingested=T0 + timedelta(minutes=1)) for e in ("live1", "live2", "live3")],
        )
        ids = {row.ext_id: row.id for row in await _telemetry(session_factory)}
        live1, live2 = ids["live1"], ids["live2"]

        async with session_factory() as session:
            alerts = AlertRepository(session)
            await alerts.save(AlertEntity.pending(live1, T0).advance(AlertState.ALERTED, T0, ext_id="1.1"))
            await alerts.save(AlertEntity.pending(live2, T0))
            await session.commit()

        async with session_factory() as session:
            items = await TelemetryRepository(session).list_alerter_work_items("slack")

        by_ext_id = {item.ext_id: alert for item, alert in items}
        assert set(by_ext_id) == {"live2", "live3"}
        assert by_ext_id["live2"] is not None and by_ext_id["live2"].state is AlertState.PENDING
        assert by_ext_id["live3"] is None
        assert [item.id for item, _ in items] == sorted(item.id for item, _ in items)

    @pytest.mark.asyncio
    async def test_respects_offset_and_limit(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        result = await _insert(
            session_factory, skd, query, T0, [make_trace(f"e{i}", time_ingested=T0) for i in range(5)]
        )
        ids = sorted(result.ids)

        async with session_factory() as session:
            repo = TelemetryRepository(session)
            items = await repo.list_alerter_work_items("slack", after_offset=ids[1], limit=2)
        assert [item.id for item, _ in items] == ids[2:4]


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class TestAlertRepository:
    async def _telemetry_id(self, factory: SessionFactory, skd: ServiceOwner, query: Query) -> int:
        result = await _insert(factory, skd, query, T0, [make_trace("a", time_ingested=T0)])
        return result.ids[0]

    @pytest.mark.asyncio
    async def test_save_assigns_id_and_round_trips(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        telemetry_id = await self._telemetry_id(session_factory, skd, query)
        async with session_factory() as session:
            stored = await AlertRepository(session).save(AlertEntity.pending(telemetry_id, T0))
            await session.commit()

        assert stored.id > 0
        assert stored.state is AlertState.PENDING
        assert stored.created_at == T0

    @pytest.mark.asyncio
    async def test_save_advances_state(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        telemetry_id = await self._telemetry_id(session_factory, skd, query)
        async with session_factory() as session:
            pending = await AlertRepository(session).save(AlertEntity.pending(telemetry_id, T0))
            await session.commit()

        data = SlackAlertData(channel="C1", message="m", thread_ts="1.2")
        alerted = pending.advance(AlertState.ALERTED, T0 + timedelta(minutes=1), ext_id="1.2", data=data)
        async with session_factory() as session:
            stored = await AlertRepository(session).save(alerted)
            await session.commit()

        assert stored.id == pending.id
        assert stored.state is AlertState.ALERTED
        assert stored.ext_id == "1.2"
        assert stored.data == data
        assert stored.updated_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_save_never_regresses(
        self, session_factory: SessionFactory, skd: ServiceOwner, query: Query
    ) -> None:
        telemetry_id = await self._telemetry_id(session_factory, skd, query)
        data = SlackAlertData(channel="C1", message="m", thread_ts="1.2")
        async with session_factory() as session:
            await AlertRepository(session).save(
                AlertEntity.pending(telemetry_id, T0).advance(AlertState.ALERTED, T0, ext_id="1.2", data=data)
            )
            await session.commit()

        async with session_factory() as session:
            stored = await AlertRepository(session).save(AlertEntity.pending(telemetry_id, T0 + timedelta(hours=1)))
            await session.commit()

        assert stored.state is AlertState.ALERTED
        assert stored.ext_id == "1.2"
        assert stored.data == data
        async with session_factory() as session:
            alerts = await AlertRepository(session).list_alerts()
        assert len(alerts) == 1
        assert alerts[0].state is AlertState.ALERTED


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_offset_defaults_to_zero(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            assert await SubscriptionRepository(session).get_offset("alerter") == 0

    @pytest.mark.asyncio
    async def test_offset_is_monotonic(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            repo = SubscriptionRepository(session)
            await repo.advance_offset("alerter", 10, T0)
            await repo.advance_offset("alerter", 4, T0)
            await repo.advance_offset("other", 2, T0)
            await session.commit()

        async with session_factory() as session:
            repo = SubscriptionRepository(session)
            assert await repo.get_offset("alerter") == 10
            assert await repo.get_offset("other") == 2
