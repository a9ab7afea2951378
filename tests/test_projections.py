"""Tests for event log projections - ordered, checkpointed, resumable replay."""

import asyncio
from datetime import UTC

import pytest

from src.exceptions import ProjectionError
from src.models.projection_builder_state import ProjectionBuilderState
from src.models.projection_views import ApplicationProcessingDelay, GrantLetterView
from src.modules.events.payloads import (
    ApplicationCancelled,
    Foo,
    FormSubmitted,
    GrantLetterReceived,
    GrantLetterViewed,
    SubmittedForm,
)
from src.modules.events.scheduling import BackoffPolicy
from src.modules.projections.application_processing_delay import (
    ApplicationProcessingDelayProjection,
)
from src.modules.projections.builder import EventLogProjectionBuilder, ProjectionRunner
from src.modules.projections.grant_letter_views import GrantLetterViewsProjection


class RecordingProjection(EventLogProjectionBuilder):
    name = "recording"

    def __init__(self, session_factory, batch_size=1, fail_on=None):
        super().__init__(session_factory, batch_size)
        self.seen = []
        self.fail_on = fail_on

    async def handle(self, event, event_timestamp, session):
        if event.id == self.fail_on:
            raise RuntimeError("boom")
        self.seen.append(event.id)


def _utc(value):
    return value if value is None or value.tzinfo is not None else value.replace(tzinfo=UTC)


async def _log(queue, *payloads):
    """Publish and finalize payloads, returning their ids."""
    ids = []
    for payload in payloads:
        published = await queue.publish(payload)
        await queue.finalize(published.id)
        ids.append(published.id)
    return ids


async def _drain(builder) -> None:
    while await builder.poll():
        pass


class TestEventLogProjectionBuilder:
    """Tests for EventLogProjectionBuilder.poll."""

    @pytest.mark.asyncio
    async def test_poll_with_empty_log_creates_checkpoint(self, session_factory):
        builder = RecordingProjection(session_factory)

        assert await builder.poll() is False

        async with session_factory() as session:
            state = await session.get(ProjectionBuilderState, "recording")
        assert state.position == 0

    @pytest.mark.asyncio
    async def test_entries_are_applied_in_order_one_per_poll(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"), Foo(foo_name="b"), Foo(foo_name="c"))
        builder = RecordingProjection(session_factory)

        assert await builder.poll() is True
        assert builder.seen == ids[:1]
        assert await builder.position() == ids[0]

        await _drain(builder)
        assert builder.seen == ids
        assert await builder.position() == ids[-1]

    @pytest.mark.asyncio
    async def test_batch_size_applies_several_entries(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"), Foo(foo_name="b"), Foo(foo_name="c"))
        builder = RecordingProjection(session_factory, batch_size=2)

        assert await builder.poll() is True

        assert builder.seen == ids[:2]

    @pytest.mark.asyncio
    async def test_replay_resumes_from_checkpoint(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"), Foo(foo_name="b"))
        await RecordingProjection(session_factory).poll()

        restarted = RecordingProjection(session_factory)
        await _drain(restarted)

        assert restarted.seen == ids[1:]

    @pytest.mark.asyncio
    async def test_failure_keeps_checkpoint_and_names_entry(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"), Foo(foo_name="b"))
        builder = RecordingProjection(session_factory, fail_on=ids[1])
        await builder.poll()

        with pytest.raises(ProjectionError) as excinfo:
            await builder.poll()

        assert excinfo.value.event_id == ids[1]
        assert excinfo.value.builder_name == "recording"
        assert str(excinfo.value) == f"error handling event {ids[1]} in projection builder recording"
        assert await builder.position() == ids[0]

    @pytest.mark.asyncio
    async def test_lag_per_builder(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"), Foo(foo_name="b"), Foo(foo_name="c"))
        builder = RecordingProjection(session_factory)
        await builder.poll()
        runner = ProjectionRunner([builder], BackoffPolicy(0, 0), session_factory)

        assert await runner.lag_per_builder() == {"recording": ids[-1] - ids[0]}


class TestProjectionRunner:
    """Tests for ProjectionRunner loops."""

    @pytest.mark.asyncio
    async def test_runner_survives_failing_builder(self, session_factory, queue):
        ids = await _log(queue, Foo(foo_name="a"))
        failing = RecordingProjection(session_factory, fail_on=ids[0])
        runner = ProjectionRunner([failing], BackoffPolicy(idle_delay=0.01, error_delay=0.01))

        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.1)

        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await failing.position() == 0


class TestShippedProjections:
    """Tests for the application and grant letter read models."""

    @pytest.mark.asyncio
    async def test_application_processing_delay(self, session_factory, queue, clock):
        form = SubmittedForm(id="form-1", organisation_number="910825526")
        submitted_at = clock.now()
        await _log(queue, FormSubmitted(form=form))
        approved_at = clock.advance(days=3)
        await _log(queue, GrantLetterReceived(form=form, letter_id=1, grant_number="2026-1"))

        await _drain(ApplicationProcessingDelayProjection(session_factory))

        async with session_factory() as session:
            row = await session.get(ApplicationProcessingDelay, "form-1")
        assert _utc(row.submitted_at) == submitted_at
        assert _utc(row.approved_at) == approved_at
        assert row.cancelled_at is None

    @pytest.mark.asyncio
    async def test_cancellation_is_recorded(self, session_factory, queue, clock):
        form = SubmittedForm(id="form-2", organisation_number="910825526")
        await _log(queue, FormSubmitted(form=form))
        cancelled_at = clock.advance(hours=5)
        await _log(queue, ApplicationCancelled(form=form))

        await _drain(ApplicationProcessingDelayProjection(session_factory))

        async with session_factory() as session:
            row = await session.get(ApplicationProcessingDelay, "form-2")
        assert _utc(row.cancelled_at) == cancelled_at

    @pytest.mark.asyncio
    async def test_grant_letter_first_view_wins(self, session_factory, queue, clock):
        form = SubmittedForm(id="form-3", organisation_number="910825526")
        created_at = clock.now()
        await _log(queue, GrantLetterReceived(form=form, letter_id=1, grant_number="2026-7"))
        first_view = clock.advance(hours=1)
        await _log(queue, GrantLetterViewed(grant_number="2026-7"))
        clock.advance(hours=1)
        await _log(queue, GrantLetterViewed(grant_number="2026-7"))

        await _drain(GrantLetterViewsProjection(session_factory))

        async with session_factory() as session:
            row = await session.get(GrantLetterView, "2026-7")
        assert _utc(row.created_at) == created_at
        assert _utc(row.first_viewed_at) == first_view

    @pytest.mark.asyncio
    async def test_projections_track_independent_checkpoints(self, session_factory, queue):
        form = SubmittedForm(id="form-4", organisation_number="910825526")
        ids = await _log(queue, FormSubmitted(form=form), Foo(foo_name="noise"))
        grant_views = GrantLetterViewsProjection(session_factory)
        delays = ApplicationProcessingDelayProjection(session_factory)

        await _drain(grant_views)

        assert await grant_views.position() == ids[-1]
        assert await delays.position() == 0
