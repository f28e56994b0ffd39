"""
Relay -> local ingestion: drain, push, redelivery and failure handling.
"""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import RelayUnreachable
from models.survey import SessionStatus
from repositories.survey_response import SurveyResponseRepository
from schemas.survey import RelayRecord, RespondentDetails, RespondentRef
from services.sync_coordinator import CoordinatorState, IngestOutcome, SyncCoordinator
from services.sync_runner import SyncRunner


async def local_responses(session_factory, **filters):
    async with session_factory() as db:
        return await SurveyResponseRepository(db).list(**filters)


async def eventually(check, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def coordinator(owner_id, session_factory, relay, lifecycle, notifier):
    return SyncCoordinator(owner_id, session_factory, relay, lifecycle=lifecycle, notifier=notifier)


@pytest.fixture
async def issued(lifecycle, template, kim):
    return await lifecycle.create_session(template.id, kim)


async def test_remote_answers_reach_local_store_on_drain(
    coordinator, issued, remote_submission, answers, session_factory, relay, lifecycle, owner_id
):
    assert issued.relay_mirrored
    await remote_submission.submit_remote(issued.session.token, answers)

    await coordinator.start()
    try:
        assert coordinator.state is CoordinatorState.SUBSCRIBED
    finally:
        await coordinator.stop()

    responses = await local_responses(session_factory)
    assert len(responses) == 1
    assert responses[0].template_id == "T1"
    assert responses[0].respondent_name == "Kim"
    assert [a.value for a in responses[0].answers] == [4, "Left knee"]

    session = await lifecycle.get_session(issued.session.id)
    assert session.status is SessionStatus.COMPLETED
    assert session.completed_at is not None
    assert await relay.list_unconsumed(owner_id) == []


async def test_redelivered_record_produces_one_response(
    coordinator, issued, answers, session_factory, relay, owner_id
):
    first = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    again = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(first)
    await relay.insert(again)

    assert await coordinator.ingest(first) is IngestOutcome.INGESTED
    assert await coordinator.ingest(again) is IngestOutcome.DUPLICATE
    assert await coordinator.ingest(first) is IngestOutcome.DUPLICATE

    assert len(await local_responses(session_factory)) == 1
    assert await relay.list_unconsumed(owner_id) == []
    assert coordinator.stats.ingested == 1
    assert coordinator.stats.duplicates == 2


async def test_backlog_is_drained_before_pushes(
    coordinator, issued, lifecycle, template, answers, session_factory, relay, owner_id
):
    backlog = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(backlog)

    await coordinator.start()
    try:
        # drained during start, before the channel was open
        assert len(await local_responses(session_factory)) == 1

        later = await lifecycle.create_session(template.id, RespondentRef(name="Lee"))
        pushed = RelayRecord(owner_id=owner_id, session_id=later.session.id, template_id="T1", answers=answers)
        await relay.insert(pushed)
        # a stale redelivery of the backlog record arrives too
        await relay.insert(backlog.model_copy(update={"id": "redelivered"}))

        async def both_ingested():
            return len(await local_responses(session_factory)) == 2

        await eventually(both_ingested)

        async def relay_empty():
            return await relay.list_unconsumed(owner_id) == []

        await eventually(relay_empty)
    finally:
        await coordinator.stop()

    assert len(await local_responses(session_factory)) == 2


async def test_push_for_another_owner_is_ignored(coordinator, answers, session_factory, relay):
    await coordinator.start()
    try:
        await relay.insert(RelayRecord(owner_id="clinic-b", session_id="elsewhere", template_id="T1", answers=answers))
        await asyncio.sleep(0.2)
    finally:
        await coordinator.stop()

    assert await local_responses(session_factory) == []
    assert len(await relay.list_unconsumed("clinic-b")) == 1


async def test_storage_failure_keeps_relay_record(
    coordinator, issued, answers, session_factory, relay, owner_id, monkeypatch
):
    record = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(record)

    async def disk_full(self, **kwargs):
        raise OperationalError("INSERT INTO survey_responses", {}, Exception("database or disk is full"))

    with monkeypatch.context() as patch:
        patch.setattr(SurveyResponseRepository, "create", disk_full)
        assert await coordinator.ingest(record) is IngestOutcome.FAILED

    assert coordinator.stats.failed == 1
    assert await relay.get(record.id) is not None
    assert await local_responses(session_factory) == []

    # the next pass retries it
    assert await coordinator.ingest(record) is IngestOutcome.INGESTED
    assert await relay.get(record.id) is None


async def test_relay_delete_failure_does_not_fail_ingest(
    owner_id, session_factory, relay, lifecycle, issued, answers, monkeypatch
):
    record = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(record)
    first = SyncCoordinator(owner_id, session_factory, relay, lifecycle=lifecycle)

    async def unreachable(record_id):
        raise RelayUnreachable("network down")

    with monkeypatch.context() as patch:
        patch.setattr(relay, "delete", unreachable)
        assert await first.ingest(record) is IngestOutcome.INGESTED

    assert len(await local_responses(session_factory)) == 1
    assert await relay.get(record.id) is not None

    # a later drain sees the local row and discards the leftover relay copy
    second = SyncCoordinator(owner_id, session_factory, relay, lifecycle=lifecycle)
    assert await second.drain_once() == 0
    assert second.stats.duplicates == 1
    assert second.state is CoordinatorState.STOPPED
    assert await relay.get(record.id) is None
    assert len(await local_responses(session_factory)) == 1


async def test_answers_for_expired_session_are_kept(
    coordinator, issued, answers, lifecycle, session_factory, relay, owner_id
):
    await lifecycle.expire_session(issued.session.id)
    record = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(record)

    assert await coordinator.ingest(record) is IngestOutcome.INGESTED
    assert len(await local_responses(session_factory)) == 1
    session = await lifecycle.get_session(issued.session.id)
    assert session.status is SessionStatus.EXPIRED


async def test_ingest_notifies_listeners(coordinator, issued, answers, notifier, relay, owner_id):
    changes = []
    notifier.add_listener(changes.append)
    record = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
    await relay.insert(record)

    await coordinator.ingest(record)
    assert [c.session_id for c in changes] == [issued.session.id]


async def test_start_with_relay_down_stops_the_coordinator(coordinator, relay, monkeypatch):
    async def unreachable(owner_id):
        raise RelayUnreachable("network down")

    monkeypatch.setattr(relay, "list_unconsumed", unreachable)
    with pytest.raises(RelayUnreachable):
        await coordinator.start()

    assert coordinator.state is CoordinatorState.STOPPED
    assert coordinator.relay_lost
    with pytest.raises(RuntimeError):
        await coordinator.start()


async def test_resweep_only_runs_while_subscribed(coordinator, issued, answers, relay, owner_id, session_factory):
    assert await coordinator.resweep() == 0

    await coordinator.start()
    try:
        record = RelayRecord(owner_id=owner_id, session_id=issued.session.id, template_id="T1", answers=answers)
        # stored without a push, as if the publish had been missed
        await relay.client.set(relay.record_key(record.id), record.encode())
        await relay.client.zadd(relay.pending_key(owner_id), {record.id: record.created_at.timestamp()})

        assert await coordinator.resweep() == 1
    finally:
        await coordinator.stop()

    assert await coordinator.resweep() == 0
    assert len(await local_responses(session_factory)) == 1


async def test_runner_replaces_a_stopped_coordinator(owner_id, session_factory, relay, lifecycle):
    runner = SyncRunner(owner_id, session_factory, relay, lifecycle=lifecycle)
    assert await runner.ensure_running()
    first = runner.coordinator

    await first.stop()
    assert not runner.running

    await runner.tick()
    assert runner.running
    assert runner.coordinator is not first
    assert runner.restarts == 1

    await runner.shutdown()
    assert runner.coordinator.state is CoordinatorState.STOPPED


async def test_runner_tick_survives_relay_outage(owner_id, session_factory, relay, lifecycle, monkeypatch):
    runner = SyncRunner(owner_id, session_factory, relay, lifecycle=lifecycle)

    async def unreachable(owner_id):
        raise RelayUnreachable("network down")

    with monkeypatch.context() as patch:
        patch.setattr(relay, "list_unconsumed", unreachable)
        assert await runner.tick() == 0
        assert not runner.running

    await runner.tick()
    assert runner.running
    await runner.shutdown()


async def test_respondent_details_survive_ingestion(
    coordinator, issued, remote_submission, answers, session_factory, relay, owner_id
):
    details = RespondentDetails(patient_name="Kim Minji", chart_number="C-1042", doctor_name="Dr. Park", gender="F", age="34")
    record = await remote_submission.submit_remote(issued.session.token, answers, details=details)

    assert await coordinator.ingest(await relay.get(record.id)) is IngestOutcome.INGESTED

    [response] = await local_responses(session_factory)
    assert response.respondent_name == "Kim"
    assert (response.patient_name, response.chart_number, response.doctor_name) == ("Kim Minji", "C-1042", "Dr. Park")
    assert (response.gender, response.age) == ("F", "34")
