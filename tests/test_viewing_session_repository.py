from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from academia.crud.viewing_session import ViewingSessionRepository
from academia.domain.policy import ConcurrencyPolicy
from academia.errors import SuspiciousActivityError
from academia.models import PlaybackEvent, ViewingSession
from academia.use_cases.playback.cleanup_sessions import close_stale_sessions
from academia.use_cases.playback.record_event import record_event
from academia.use_cases.playback.start_session import start_session
from academia.use_cases.playback.sync_watch_time import sync_watch_time

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def create_session(repo, seeded, content_id, *, token, now=NOW, ip="10.0.0.1"):
    created = await repo.create(
        session_token=token,
        user_id=seeded.student_id,
        content_id=content_id,
        declared_duration_seconds=600.0,
        ip_address=ip,
        user_agent="Firefox",
        now=now,
    )
    await repo.commit()
    return created


async def count_sessions(session_factory, **filters) -> int:
    async with session_factory() as db:
        stmt = select(func.count()).select_from(ViewingSession).filter_by(**filters)
        return (await db.execute(stmt)).scalar_one()


@pytest.mark.anyio
async def test_sync_is_idempotent_against_the_store(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="token-a")

    for value in (30.0, 30.0, 30.0):
        async with session_factory() as db:
            await sync_watch_time(
                ViewingSessionRepository(db), seeded.student_id, "token-a", value, now=NOW
            )

    async with session_factory() as db:
        stored = await ViewingSessionRepository(db).get_owned("token-a", seeded.student_id)
        assert stored.watched_seconds == 30.0
        assert stored.completion_percent == pytest.approx(5.0)


@pytest.mark.anyio
async def test_out_of_order_sync_never_moves_backwards(session_factory, seeded) -> None:
    async with session_factory() as db:
        await create_session(ViewingSessionRepository(db), seeded, seeded.video_id, token="token-b")

    for value in (12.0, 45.0, 30.0):
        async with session_factory() as db:
            await sync_watch_time(
                ViewingSessionRepository(db), seeded.student_id, "token-b", value, now=NOW
            )

    async with session_factory() as db:
        stored = await ViewingSessionRepository(db).get_owned("token-b", seeded.student_id)
        assert stored.watched_seconds == 45.0


@pytest.mark.anyio
async def test_only_one_active_session_per_content(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="first")
        with pytest.raises(IntegrityError):
            await repo.create(
                session_token="second",
                user_id=seeded.student_id,
                content_id=seeded.video_id,
                declared_duration_seconds=None,
                ip_address=None,
                user_agent=None,
                now=NOW,
            )
        await repo.rollback()

    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        closed = await repo.close_active_for_content(
            seeded.student_id, seeded.video_id, now=NOW
        )
        assert closed == 1
        await create_session(repo, seeded, seeded.video_id, token="second")

    assert await count_sessions(session_factory, content_id=seeded.video_id) == 2
    assert await count_sessions(session_factory, content_id=seeded.video_id, active=True) == 1


@pytest.mark.anyio
async def test_close_stale_closes_only_silent_sessions(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(
            repo, seeded, seeded.video_id, token="stale", now=NOW - timedelta(minutes=10)
        )
        await create_session(
            repo, seeded, seeded.second_video_id, token="fresh", now=NOW - timedelta(seconds=20)
        )

    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        closed = await repo.close_stale(updated_before=NOW - timedelta(seconds=120), now=NOW)
        await repo.commit()

    assert closed == 1
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        stale = await repo.get_owned("stale", seeded.student_id)
        fresh = await repo.get_owned("fresh", seeded.student_id)
        assert stale.active is False
        assert stale.ended_at is not None
        assert stale.end_reason == "stale"
        assert fresh.active is True


@pytest.mark.anyio
async def test_active_listing_skips_stale_and_closed(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="live")
        await create_session(
            repo, seeded, seeded.second_video_id, token="old", now=NOW - timedelta(minutes=5)
        )
        closed = await create_session(repo, seeded, seeded.third_video_id, token="closed")
        await repo.close(closed, now=NOW, reason="close")
        await repo.commit()

    async with session_factory() as db:
        active = await ViewingSessionRepository(db).list_active(
            seeded.student_id, updated_since=NOW - timedelta(seconds=120)
        )

    assert [s.session_token for s in active] == ["live"]


@pytest.mark.anyio
async def test_recent_client_pairs_are_distinct(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="a", ip="10.0.0.1")
        await repo.close_all_active(seeded.student_id, now=NOW)
        await create_session(repo, seeded, seeded.video_id, token="b", ip="10.0.0.1")
        await create_session(repo, seeded, seeded.second_video_id, token="c", ip="10.0.0.2")
        await create_session(
            repo, seeded, seeded.third_video_id, token="d", ip="10.0.0.9", now=NOW - timedelta(days=2)
        )

    async with session_factory() as db:
        pairs = await ViewingSessionRepository(db).recent_client_pairs(
            seeded.student_id, since=NOW - timedelta(hours=24)
        )

    assert sorted(pairs) == [("10.0.0.1", "Firefox"), ("10.0.0.2", "Firefox")]


@pytest.mark.anyio
async def test_denied_start_leaves_store_untouched(session_factory, seeded) -> None:
    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="one")
        await create_session(repo, seeded, seeded.second_video_id, token="two")
        await create_session(repo, seeded, seeded.third_video_id, token="three", now=NOW - timedelta(hours=1))
        await repo.close_all_active(seeded.student_id, now=NOW - timedelta(hours=1))
        await repo.commit()

    async with session_factory() as db:
        repo = ViewingSessionRepository(db)
        await create_session(repo, seeded, seeded.video_id, token="one-again")
        await create_session(repo, seeded, seeded.second_video_id, token="two-again")

    async with session_factory() as db:
        with pytest.raises(SuspiciousActivityError):
            await start_session(
                ViewingSessionRepository(db),
                seeded.student_id,
                seeded.third_video_id,
                policy=ConcurrencyPolicy(),
                now=NOW,
            )

    assert await count_sessions(session_factory) == 5
    assert await count_sessions(session_factory, active=True) == 2


@pytest.mark.anyio
async def test_closing_event_closes_session_and_is_logged(session_factory, seeded) -> None:
    async with session_factory() as db:
        started = await start_session(
            ViewingSessionRepository(db),
            seeded.student_id,
            seeded.video_id,
            policy=ConcurrencyPolicy(),
            ip_address="10.0.0.1",
            user_agent="Firefox",
            now=NOW,
        )
    token = started.session.session_id

    async with session_factory() as db:
        await record_event(
            ViewingSessionRepository(db), seeded.student_id, token, "play", 0.0, now=NOW
        )
    async with session_factory() as db:
        response = await record_event(
            ViewingSessionRepository(db),
            seeded.student_id,
            token,
            "ended",
            600.0,
            {"source": "player"},
            now=NOW + timedelta(minutes=10),
        )

    assert response.session.active is False
    async with session_factory() as db:
        events = (
            await db.execute(select(PlaybackEvent).order_by(PlaybackEvent.occurred_at))
        ).scalars().all()
    assert [event.kind for event in events] == ["play", "ended"]
    assert events[1].event_metadata == {"source": "player"}


@pytest.mark.anyio
async def test_swept_session_resumed_after_pause_counts_toward_limit(
    session_factory, seeded
) -> None:
    policy = ConcurrencyPolicy()

    async with session_factory() as db:
        started = await start_session(
            ViewingSessionRepository(db),
            seeded.student_id,
            seeded.video_id,
            policy=policy,
            now=NOW,
        )
    token = started.session.session_id
    resumed_at = NOW + timedelta(minutes=3)

    @asynccontextmanager
    async def repo_factory():
        async with session_factory() as db:
            yield ViewingSessionRepository(db)

    swept = await close_stale_sessions(repo_factory, stale_after_seconds=120, now=resumed_at)
    async with session_factory() as db:
        await record_event(
            ViewingSessionRepository(db),
            seeded.student_id,
            token,
            "play",
            12.0,
            policy=policy,
            now=resumed_at,
        )
    async with session_factory() as db:
        await sync_watch_time(
            ViewingSessionRepository(db),
            seeded.student_id,
            token,
            13.0,
            policy=policy,
            now=resumed_at + timedelta(seconds=3),
        )

    assert swept == 1
    async with session_factory() as db:
        stored = await ViewingSessionRepository(db).get_owned(token, seeded.student_id)
        assert stored.active is True
        assert stored.end_reason is None
        assert stored.ended_at is None

    async with session_factory() as db:
        second = await start_session(
            ViewingSessionRepository(db),
            seeded.student_id,
            seeded.second_video_id,
            policy=policy,
            now=resumed_at + timedelta(seconds=5),
        )
    assert second.warning is not None

    async with session_factory() as db:
        with pytest.raises(SuspiciousActivityError):
            await start_session(
                ViewingSessionRepository(db),
                seeded.student_id,
                seeded.third_video_id,
                policy=policy,
                now=resumed_at + timedelta(seconds=6),
            )
    assert await count_sessions(session_factory, active=True) == 2
