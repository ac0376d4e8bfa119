"""Tests for the work chunk transition table."""

import pytest

from batchstep.errors import IllegalTransitionError
from batchstep.models import WorkChunkStatus as S
from batchstep.states import (
    TRANSITIONS,
    ChunkEvent,
    check_transition,
    creation_status,
    is_allowed,
    sources_for,
    target_for,
)


@pytest.mark.parametrize(
    "event,sources,target",
    [
        (ChunkEvent.DISPATCH, {S.READY}, S.QUEUED),
        (ChunkEvent.DISPATCH_FAILED, {S.QUEUED}, S.READY),
        (ChunkEvent.DEQUEUE, {S.QUEUED}, S.IN_PROGRESS),
        (ChunkEvent.POLL_DELAY, {S.IN_PROGRESS}, S.POLL_WAITING),
        (ChunkEvent.POLL_EXPIRED, {S.POLL_WAITING}, S.READY),
        (ChunkEvent.COMPLETE, {S.IN_PROGRESS}, S.COMPLETED),
        (ChunkEvent.ERROR, {S.IN_PROGRESS}, S.ERRORED),
        (ChunkEvent.FAIL, {S.IN_PROGRESS, S.POLL_WAITING}, S.FAILED),
        (ChunkEvent.GATE_ADVANCE, {S.GATE_WAITING, S.QUEUED}, S.READY),
    ],
)
def test_transition_table(event, sources, target):
    assert sources_for(event) == frozenset(sources)
    assert target_for(event) == target


def test_creation_events_have_no_source():
    assert TRANSITIONS[ChunkEvent.CREATE_READY].sources == frozenset()
    assert TRANSITIONS[ChunkEvent.CREATE_GATED].target == S.GATE_WAITING


def test_terminal_statuses_have_no_outgoing_transitions():
    for terminal in (S.COMPLETED, S.FAILED):
        assert not any(is_allowed(terminal, target) for target in S)


def test_check_transition_normalizes_sources():
    assert check_transition(["READY"], "QUEUED") == (S.READY,)


@pytest.mark.parametrize(
    "sources,target",
    [
        ([S.COMPLETED], S.READY),
        ([S.READY], S.IN_PROGRESS),
        ([S.ERRORED], S.IN_PROGRESS),
        ([S.QUEUED, S.COMPLETED], S.READY),
        ([], S.READY),
    ],
)
def test_check_transition_rejects_pairs_outside_table(sources, target):
    with pytest.raises(IllegalTransitionError):
        check_transition(sources, target)


@pytest.mark.parametrize(
    "first_step,gated,expected",
    [
        (True, True, S.READY),
        (True, False, S.READY),
        (False, True, S.GATE_WAITING),
        (False, False, S.READY),
    ],
)
def test_creation_status(first_step, gated, expected):
    assert creation_status(first_step=first_step, gated_execution=gated) == expected
