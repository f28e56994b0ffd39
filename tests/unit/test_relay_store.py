import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from core.exceptions import RelayUnreachable
from models.survey import SessionStatus
from schemas.survey import Answer, RelayRecord, SessionSnapshot, TemplateSnapshot


def make_record(owner_id="clinic-a", session_id="s-1", minutes_ago=0):
    return RelayRecord(
        owner_id=owner_id,
        session_id=session_id,
        template_id="T1",
        respondent_name="Kim",
        answers=[Answer(question_id="pain", value=2)],
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


def make_snapshot(token="AB12CD34", hours=2):
    now = datetime.now(timezone.utc)
    return SessionSnapshot(
        id="s-1",
        token=token,
        template_id="T1",
        respondent_name="Kim",
        status=SessionStatus.PENDING,
        expires_at=now + timedelta(hours=hours),
        created_at=now,
        owner_id="clinic-a",
    )


async def test_insert_then_list_returns_oldest_first(relay):
    newer = make_record(session_id="s-new", minutes_ago=1)
    older = make_record(session_id="s-old", minutes_ago=10)
    await relay.insert(newer)
    await relay.insert(older)

    records = await relay.list_unconsumed("clinic-a")
    assert [r.session_id for r in records] == ["s-old", "s-new"]


async def test_list_is_scoped_to_owner(relay):
    await relay.insert(make_record(owner_id="clinic-a"))
    await relay.insert(make_record(owner_id="clinic-b", session_id="s-2"))

    records = await relay.list_unconsumed("clinic-b")
    assert [r.owner_id for r in records] == ["clinic-b"]


async def test_delete_removes_record_and_index(relay, redis_client):
    record = make_record()
    await relay.insert(record)
    await relay.delete(record.id)

    assert await relay.get(record.id) is None
    assert await relay.list_unconsumed("clinic-a") == []
    assert await redis_client.zcard(relay.pending_key("clinic-a")) == 0


async def test_malformed_record_is_skipped_and_left_in_place(relay, redis_client):
    good = make_record()
    await relay.insert(good)
    await redis_client.set(relay.record_key("broken"), "{not json")
    await redis_client.zadd(relay.pending_key("clinic-a"), {"broken": 0})

    records = await relay.list_unconsumed("clinic-a")
    assert [r.id for r in records] == [good.id]
    assert await redis_client.get(relay.record_key("broken")) == "{not json"


async def test_dangling_index_entries_are_pruned(relay, redis_client):
    await redis_client.zadd(relay.pending_key("clinic-a"), {"gone": 0})
    assert await relay.list_unconsumed("clinic-a") == []
    assert await redis_client.zcard(relay.pending_key("clinic-a")) == 0


async def test_session_snapshot_expires_after_grace(relay, redis_client):
    snapshot = make_snapshot(hours=2)
    await relay.put_session_snapshot(snapshot)

    ttl = await redis_client.ttl(relay.session_key(snapshot.token))
    # two hours until expiry plus the one hour grace configured for tests
    assert 3 * 3600 - 60 < ttl <= 3 * 3600
    assert (await relay.get_session_snapshot(snapshot.token)).owner_id == "clinic-a"


async def test_mark_snapshot_status_keeps_ttl(relay, redis_client):
    snapshot = make_snapshot()
    await relay.put_session_snapshot(snapshot)
    completed_at = datetime.now(timezone.utc)

    assert await relay.mark_snapshot_status(snapshot.token, SessionStatus.COMPLETED, completed_at=completed_at)
    stored = await relay.get_session_snapshot(snapshot.token)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.completed_at == completed_at
    assert await redis_client.ttl(relay.session_key(snapshot.token)) > 0


async def test_mark_status_of_missing_snapshot_is_a_no_op(relay):
    assert await relay.mark_snapshot_status("NOPE0000", SessionStatus.EXPIRED) is False


async def test_template_snapshot_is_written_once(relay):
    first = TemplateSnapshot(id="T1", name="First", questions=[{"id": "pain"}])
    second = TemplateSnapshot(id="T1", name="Second", questions=[])

    assert await relay.put_template_snapshot_if_absent(first) is True
    assert await relay.put_template_snapshot_if_absent(second) is False
    assert (await relay.get_template_snapshot("T1")).name == "First"


async def test_subscription_delivers_inserted_records(relay):
    received = []
    delivered = asyncio.Event()

    async def on_insert(record):
        received.append(record)
        delivered.set()

    subscription = await relay.subscribe("clinic-a", on_insert)
    try:
        record = make_record()
        await relay.insert(record)
        await asyncio.wait_for(delivered.wait(), timeout=2)
    finally:
        await subscription.close()

    assert [r.id for r in received] == [record.id]
    assert not subscription.active


async def test_subscription_close_waits_for_running_callback(relay):
    started = asyncio.Event()
    finished = []

    async def slow_handler(record):
        started.set()
        await asyncio.sleep(0.2)
        finished.append(record.id)

    subscription = await relay.subscribe("clinic-a", slow_handler)
    record = make_record()
    await relay.insert(record)
    await asyncio.wait_for(started.wait(), timeout=2)
    await subscription.close()

    assert finished == [record.id]


async def test_connection_errors_surface_as_relay_unreachable(relay, monkeypatch):
    async def down(*args, **kwargs):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(relay.client, "zrange", down)
    with pytest.raises(RelayUnreachable):
        await relay.list_unconsumed("clinic-a")


async def test_any_redis_error_on_the_channel_reports_it_lost(relay):
    lost = asyncio.Event()

    async def on_insert(record):
        pass

    async def on_lost():
        lost.set()

    subscription = await relay.subscribe("clinic-a", on_insert, on_lost=on_lost)

    async def broken(*args, **kwargs):
        raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

    subscription._pubsub.get_message = broken
    try:
        await asyncio.wait_for(lost.wait(), timeout=2)
    finally:
        await subscription.close()

    assert subscription.lost
    assert not subscription.active


async def test_reader_crash_reports_the_channel_lost(relay):
    lost = asyncio.Event()

    async def on_insert(record):
        pass

    async def on_lost():
        lost.set()

    subscription = await relay.subscribe("clinic-a", on_insert, on_lost=on_lost)

    async def garbled(*args, **kwargs):
        return {"type": "message"}  # no "data"

    subscription._pubsub.get_message = garbled
    try:
        await asyncio.wait_for(lost.wait(), timeout=2)
    finally:
        await subscription.close()

    assert subscription.lost
