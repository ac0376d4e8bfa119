"""Work chunk state machine.

Every status change the engine performs is named by a ``ChunkEvent`` and
looked up in ``TRANSITIONS``. Storage adapters call ``check_transition`` before
writing, so an unknown ``from -> to`` pair is rejected in one place rather than
at each call site.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, NamedTuple, Tuple

from .errors import IllegalTransitionError
from .models import WorkChunkStatus as S


class ChunkEvent(str, Enum):
    CREATE_READY = "create_ready"
    CREATE_GATED = "create_gated"
    DISPATCH = "dispatch"
    DISPATCH_FAILED = "dispatch_failed"
    DEQUEUE = "dequeue"
    POLL_DELAY = "poll_delay"
    POLL_EXPIRED = "poll_expired"
    COMPLETE = "complete"
    ERROR = "error"
    FAIL = "fail"
    GATE_ADVANCE = "gate_advance"


class Transition(NamedTuple):
    sources: FrozenSet[S]
    target: S


# Creation events have no source: the chunk does not exist yet.
TRANSITIONS: Dict[ChunkEvent, Transition] = {
    ChunkEvent.CREATE_READY: Transition(frozenset(), S.READY),
    ChunkEvent.CREATE_GATED: Transition(frozenset(), S.GATE_WAITING),
    ChunkEvent.DISPATCH: Transition(frozenset({S.READY}), S.QUEUED),
    ChunkEvent.DISPATCH_FAILED: Transition(frozenset({S.QUEUED}), S.READY),
    ChunkEvent.DEQUEUE: Transition(frozenset({S.QUEUED}), S.IN_PROGRESS),
    ChunkEvent.POLL_DELAY: Transition(frozenset({S.IN_PROGRESS}), S.POLL_WAITING),
    ChunkEvent.POLL_EXPIRED: Transition(frozenset({S.POLL_WAITING}), S.READY),
    ChunkEvent.COMPLETE: Transition(frozenset({S.IN_PROGRESS}), S.COMPLETED),
    ChunkEvent.ERROR: Transition(frozenset({S.IN_PROGRESS}), S.ERRORED),
    ChunkEvent.FAIL: Transition(frozenset({S.IN_PROGRESS, S.POLL_WAITING}), S.FAILED),
    ChunkEvent.GATE_ADVANCE: Transition(frozenset({S.GATE_WAITING, S.QUEUED}), S.READY),
}

_ALLOWED: FrozenSet[Tuple[S, S]] = frozenset(
    (source, t.target) for t in TRANSITIONS.values() for source in t.sources
)


def sources_for(event: ChunkEvent) -> FrozenSet[S]:
    return TRANSITIONS[event].sources


def target_for(event: ChunkEvent) -> S:
    return TRANSITIONS[event].target


def is_allowed(from_status: S, to_status: S) -> bool:
    return (S(from_status), S(to_status)) in _ALLOWED


def check_transition(from_statuses: Iterable[S], to_status: S) -> Tuple[S, ...]:
    """Validate a conditional update request and return its normalized sources.

    Raises:
        IllegalTransitionError: if no source is given or any ``source ->
            to_status`` pair is absent from the table.
    """
    sources = tuple(S(s) for s in from_statuses)
    target = S(to_status)
    if not sources or not all(is_allowed(s, target) for s in sources):
        raise IllegalTransitionError(sources, target)
    return sources


def creation_status(first_step: bool, gated_execution: bool) -> S:
    """Status of a freshly created chunk.

    The first step never waits on a gate since there is no earlier step.
    """
    if first_step or not gated_execution:
        return target_for(ChunkEvent.CREATE_READY)
    return target_for(ChunkEvent.CREATE_GATED)


__all__ = [
    "ChunkEvent",
    "TRANSITIONS",
    "Transition",
    "check_transition",
    "creation_status",
    "is_allowed",
    "sources_for",
    "target_for",
]
