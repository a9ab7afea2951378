"""Tests for EventManager - dispatch, retry policy, settlement and cleanup."""

import asyncio

import pytest
from sqlalchemy import func, select

from src.models.event_handler_state import EventHandlerState
from src.models.event_log import EventLogEntry
from src.models.queued_event import QueuedEvent
from src.modules.events.manager import PAYLOAD_DECODING
from src.modules.events.outcomes import (
    FatalError,
    Success,
    TransientError,
    UnrecoverableError,
    fatal_error,
    success,
    transient_error,
    unrecoverable_error,
)
from src.modules.events.payloads import Bar, Foo
from src.modules.events.registry import HandlerRegistry, HandlerRegistryBuilder, on


class Recorder:
    """Handler function returning scripted outcomes and counting calls."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, event):
        self.calls.append(event.id)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def _log_entry(session_factory, event_id):
    async with session_factory() as session:
        return await session.get(EventLogEntry, event_id)


class TestProcessNext:
    """Tests for EventManager.process_next."""

    @pytest.mark.asyncio
    async def test_returns_false_when_nothing_claimable(self, make_manager):
        manager = make_manager(on("foo-handler", Foo)(Recorder(success())))

        assert await manager.process_next() is False

    @pytest.mark.asyncio
    async def test_foo_bar_end_to_end(self, make_manager, queue, session_factory):
        received = []

        @on("foo-handler", Foo)
        def foo_handler(event):
            received.append(event.payload.foo_name)
            return success()

        manager = make_manager(foo_handler)
        published = await queue.publish(Foo(foo_name="bar"))

        assert await manager.process_next() is True
        assert received == ["bar"]
        assert await manager.handled_events(published.id) == {"foo-handler": Success()}

        assert await manager.cleanup_once() == 1
        entry = await _log_entry(session_factory, published.id)
        assert entry is not None
        assert entry.errors == []
        assert await manager.handled_events(published.id) == {}
        assert await _count(session_factory, QueuedEvent) == 0

    @pytest.mark.asyncio
    async def test_transient_error_is_retried_after_abandon_timeout(self, make_manager, queue, clock):
        handler = Recorder(transient_error("not yet"), success())
        manager = make_manager(on("flaky", Foo)(handler))
        published = await queue.publish(Foo(foo_name="bar"))

        await manager.process_next()
        assert await manager.handled_events(published.id) == {
            "flaky": TransientError(reason="not yet")
        }
        assert await manager.process_next() is False

        clock.advance(seconds=61)
        await manager.process_next()

        assert handler.calls == [published.id, published.id]
        assert await manager.handled_events(published.id) == {"flaky": Success()}
        assert await manager.states.attempts_for(published.id) == {"flaky": 2}

    @pytest.mark.asyncio
    async def test_successful_handlers_are_not_invoked_again(self, make_manager, queue, clock):
        ok = Recorder(success())
        flaky = Recorder(transient_error("down"))
        manager = make_manager(on("ok", Foo)(ok), on("flaky", Foo)(flaky))
        await queue.publish(Foo(foo_name="bar"))

        await manager.process_next()
        clock.advance(minutes=2)
        await manager.process_next()

        assert len(ok.calls) == 1
        assert len(flaky.calls) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_halts_remaining_handlers(self, make_manager, queue, clock):
        first = Recorder(success())
        fatal = Recorder(fatal_error("corrupt payload"))
        last = Recorder(success())
        manager = make_manager(on("first", Foo)(first), on("fatal", Foo)(fatal), on("last", Foo)(last))
        published = await queue.publish(Foo(foo_name="bar"))

        await manager.process_next()
        clock.advance(minutes=2)
        await manager.process_next()

        assert len(first.calls) == 1
        assert len(fatal.calls) == 1
        assert last.calls == []
        assert await manager.handled_events(published.id) == {
            "first": Success(),
            "fatal": FatalError(reason="corrupt payload"),
        }

    @pytest.mark.asyncio
    async def test_fatal_error_freezes_pending_siblings(self, make_manager, queue, clock):
        flaky = Recorder(transient_error("archive down"))
        fatal = Recorder(fatal_error("poison"))
        manager = make_manager(on("flaky", Foo)(flaky), on("fatal", Foo)(fatal))
        published = await queue.publish(Foo(foo_name="bar"))

        for _ in range(3):
            await manager.process_next()
            clock.advance(minutes=2)

        assert len(flaky.calls) == 1
        assert len(fatal.calls) == 1
        assert await manager.handled_events(published.id) == {
            "flaky": TransientError(reason="archive down"),
            "fatal": FatalError(reason="poison"),
        }
        assert await manager.states.attempts_for(published.id) == {"flaky": 1, "fatal": 1}

    @pytest.mark.asyncio
    async def test_unrecoverable_error_does_not_halt_siblings(self, make_manager, queue, clock):
        broken = Recorder(unrecoverable_error("missing id"))
        sibling = Recorder(success())
        manager = make_manager(on("broken", Foo)(broken), on("sibling", Foo)(sibling))
        published = await queue.publish(Foo(foo_name="bar"))

        await manager.process_next()
        clock.advance(minutes=2)
        await manager.process_next()

        assert len(broken.calls) == 1
        assert len(sibling.calls) == 1
        assert await manager.handled_events(published.id) == {
            "broken": UnrecoverableError(reason="missing id"),
            "sibling": Success(),
        }

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_transient_error(self, make_manager, queue):
        async def explode(event):
            raise ConnectionError("archive unavailable")

        manager = make_manager(on("explodes", Foo)(explode))
        published = await queue.publish(Foo(foo_name="bar"))

        assert await manager.process_next() is True

        outcome = (await manager.handled_events(published.id))["explodes"]
        assert isinstance(outcome, TransientError)
        assert "archive unavailable" in outcome.reason

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, make_manager, queue):
        async def cancelled(event):
            raise asyncio.CancelledError()

        manager = make_manager(on("cancelled", Foo)(cancelled))
        published = await queue.publish(Foo(foo_name="bar"))

        with pytest.raises(asyncio.CancelledError):
            await manager.process_next()

        assert await manager.handled_events(published.id) == {}

    @pytest.mark.asyncio
    async def test_handlers_only_receive_subscribed_kinds(self, make_manager, queue):
        foo_only = Recorder(success())
        bar_only = Recorder(success())
        everything = Recorder(success())
        manager = make_manager(
            on("foo-only", Foo)(foo_only),
            on("bar-only", Bar)(bar_only),
            on("everything")(everything),
        )
        foo = await queue.publish(Foo(foo_name="bar"))
        bar = await queue.publish(Bar(bar_name="foo"))

        await manager.process_next()
        await manager.process_next()

        assert foo_only.calls == [foo.id]
        assert bar_only.calls == [bar.id]
        assert everything.calls == [foo.id, bar.id]

    @pytest.mark.asyncio
    async def test_event_without_handlers_is_finalized(self, make_manager, queue, session_factory, clock):
        bar_only = Recorder(success())
        manager = make_manager(on("bar-only", Bar)(bar_only))
        published = await queue.publish(Foo(foo_name="orphan"))

        assert await manager.process_next() is True
        clock.advance(minutes=2)
        assert await manager.process_next() is False

        entry = await _log_entry(session_factory, published.id)
        assert entry is not None
        assert entry.attempts == 1
        assert entry.errors == []
        assert bar_only.calls == []
        assert await _count(session_factory, QueuedEvent) == 0

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_halted_with_fatal_error(
        self, make_manager, queue, session_factory, clock
    ):
        handler = Recorder(success())
        manager = make_manager(on("foo-handler", Foo)(handler))
        broken = await queue.publish(Foo(foo_name="broken"))
        async with session_factory() as session:
            async with session.begin():
                queued = await session.get(QueuedEvent, broken.id)
                queued.payload = {"renamed": 1}

        assert await manager.process_next() is True
        clock.advance(minutes=2)
        assert await manager.process_next() is True

        outcomes = await manager.handled_events(broken.id)
        assert set(outcomes) == {PAYLOAD_DECODING}
        assert isinstance(outcomes[PAYLOAD_DECODING], FatalError)
        assert handler.calls == []
        assert await manager.states.attempts_for(broken.id) == {PAYLOAD_DECODING: 1}


class TestRegistry:
    """Tests for HandlerRegistry construction."""

    def test_duplicate_handler_id_raises(self):
        handler = on("dup", Foo)(Recorder(success()))
        other = on("dup", Bar)(Recorder(success()))

        with pytest.raises(ValueError, match="Handler with id 'dup' is already registered"):
            HandlerRegistry([handler, other])

    def test_builder_preserves_registration_order(self):
        builder = HandlerRegistryBuilder()

        @builder.handle("second", Foo)
        def second(event):
            return success()

        builder.register(on("first", Foo)(Recorder(success())))
        registry = builder.build()

        assert [h.id for h in registry.handlers_for(Foo(foo_name="x"))] == ["second", "first"]
        assert registry.handlers_for(Bar(bar_name="x")) == ()
        assert len(registry) == 2


class TestCleanup:
    """Tests for EventManager.cleanup_once."""

    @pytest.mark.asyncio
    async def test_unsettled_events_are_kept(self, make_manager, queue, session_factory):
        manager = make_manager(on("flaky", Foo)(Recorder(transient_error("down"))))
        published = await queue.publish(Foo(foo_name="bar"))
        await manager.process_next()

        assert await manager.cleanup_once() == 0
        assert await _log_entry(session_factory, published.id) is None
        assert "flaky" in await manager.handled_events(published.id)

    @pytest.mark.asyncio
    async def test_fatal_events_are_finalized_with_errors(self, make_manager, queue, session_factory):
        manager = make_manager(
            on("fatal", Foo)(Recorder(fatal_error("poison"))),
            on("never", Foo)(Recorder(success())),
        )
        published = await queue.publish(Foo(foo_name="bar"))
        await manager.process_next()

        assert await manager.cleanup_once() == 1

        entry = await _log_entry(session_factory, published.id)
        assert entry.errors == [{"handler_id": "fatal", "type": "fatal_error", "reason": "poison"}]
        assert await _count(session_factory, EventHandlerState) == 0

    @pytest.mark.asyncio
    async def test_unrecoverable_errors_are_archived(self, make_manager, queue, session_factory):
        manager = make_manager(
            on("broken", Foo)(Recorder(unrecoverable_error("gone"))),
            on("ok", Foo)(Recorder(success())),
        )
        published = await queue.publish(Foo(foo_name="bar"))
        await manager.process_next()

        assert await manager.cleanup_once() == 1

        entry = await _log_entry(session_factory, published.id)
        assert entry.errors == [
            {"handler_id": "broken", "type": "unrecoverable_error", "reason": "gone"}
        ]

    @pytest.mark.asyncio
    async def test_cleanup_pages_through_all_settled_events(self, make_manager, queue, session_factory):
        manager = make_manager(on("ok", Foo)(Recorder(success())))
        for index in range(5):
            await queue.publish(Foo(foo_name=f"event-{index}"))
        while await manager.process_next():
            pass

        assert await manager.cleanup_once() == 5
        assert await _count(session_factory, EventLogEntry) == 5
        assert await _count(session_factory, QueuedEvent) == 0

    @pytest.mark.asyncio
    async def test_cleanup_does_not_decode_stored_payloads(self, make_manager, queue, session_factory):
        manager = make_manager(on("ok", Foo)(Recorder(success())))
        first = await queue.publish(Foo(foo_name="first"))
        second = await queue.publish(Foo(foo_name="second"))
        while await manager.process_next():
            pass
        async with session_factory() as session:
            async with session.begin():
                queued = await session.get(QueuedEvent, first.id)
                queued.payload = {"renamed": 1}

        assert await manager.cleanup_once() == 2

        assert await _log_entry(session_factory, first.id) is not None
        assert await _log_entry(session_factory, second.id) is not None

    @pytest.mark.asyncio
    async def test_orphaned_handler_states_are_swept(self, make_manager, session_factory):
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    EventHandlerState(
                        event_id=12345,
                        handler_id="gone",
                        outcome_type="success",
                        outcome={"type": "success"},
                        attempts=1,
                    )
                )

        await make_manager(on("ok", Foo)(Recorder(success()))).cleanup_once()

        assert await _count(session_factory, EventHandlerState) == 0


class TestLoops:
    """Tests for the long-lived manager loops."""

    @pytest.mark.asyncio
    async def test_process_loop_runs_until_cancelled(self, make_manager, queue):
        handled = asyncio.Event()

        @on("signal", Foo)
        def signal_handler(event):
            handled.set()
            return success()

        manager = make_manager(signal_handler)
        await queue.publish(Foo(foo_name="bar"))

        task = asyncio.create_task(manager.run_process_loop())
        await asyncio.wait_for(handled.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cleanup_loop_finalizes_settled_events(self, make_manager, queue, session_factory):
        manager = make_manager(on("ok", Foo)(Recorder(success())))
        published = await queue.publish(Foo(foo_name="bar"))
        await manager.process_next()

        task = asyncio.create_task(manager.cleanup_finalized_events())
        for _ in range(100):
            if await _log_entry(session_factory, published.id) is not None:
                break
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert await _log_entry(session_factory, published.id) is not None
