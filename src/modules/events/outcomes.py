"""Handler outcomes - what a handler reports back for one event."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = logging.getLogger(__name__)


class _Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminal: ClassVar[bool] = False


class Success(_Outcome):
    type: Literal["success"] = "success"
    terminal: ClassVar[bool] = True


class TransientError(_Outcome):
    """Expected, recoverable failure. The handler runs again on the next claim."""

    type: Literal["transient_error"] = "transient_error"
    reason: str


class UnrecoverableError(_Outcome):
    """The handler can never succeed for this event. Siblings keep running."""

    type: Literal["unrecoverable_error"] = "unrecoverable_error"
    reason: str
    terminal: ClassVar[bool] = True


class FatalError(_Outcome):
    """Processing emergency. No further handler runs for this event."""

    type: Literal["fatal_error"] = "fatal_error"
    reason: str
    terminal: ClassVar[bool] = True


HandlerOutcome = Annotated[
    Union[Success, TransientError, UnrecoverableError, FatalError],
    Field(discriminator="type"),
]

_outcome_adapter: TypeAdapter[HandlerOutcome] = TypeAdapter(HandlerOutcome)


def dump_outcome(outcome: _Outcome) -> dict:
    return outcome.model_dump(mode="json")


def load_outcome(body: dict) -> _Outcome:
    return _outcome_adapter.validate_python(body)


def success() -> Success:
    return Success()


def transient_error(reason: str, exc: BaseException | None = None) -> TransientError:
    if exc is not None:
        logger.warning("%s: %s", reason, exc, exc_info=exc)
        reason = f"{reason}: {exc}"
    return TransientError(reason=reason)


def unrecoverable_error(reason: str, exc: BaseException | None = None) -> UnrecoverableError:
    logger.error("%s", reason, exc_info=exc)
    return UnrecoverableError(reason=reason)


def fatal_error(reason: str, exc: BaseException | None = None) -> FatalError:
    logger.error("%s", reason, exc_info=exc)
    return FatalError(reason=reason)


def is_halted(outcomes: Mapping[str, _Outcome]) -> bool:
    """True once any handler has reported a fatal error for the event."""
    return any(isinstance(outcome, FatalError) for outcome in outcomes.values())


def is_settled(handler_ids: Iterable[str], outcomes: Mapping[str, _Outcome]) -> bool:
    """Decide whether no handler will ever be invoked again for an event.

    An event with no registered handlers is settled right away.
    """
    if is_halted(outcomes):
        return True
    return all(
        handler_id in outcomes and outcomes[handler_id].terminal
        for handler_id in handler_ids
    )
