"""
Error classes for batchstep.

Lost races are not errors: a conditional update that finds the chunk in a
different status reports zero rows affected and the caller decides what to do.
The exceptions below cover the cases that are genuinely faults:

- NotFoundError: the referenced chunk or job instance does not exist
- ValidationError: a malformed creation request
- IllegalTransitionError: a transition the state table does not allow
- StorageUnavailableError: the durable store cannot be reached
- JobStepFailedError: raised by step workers to fail a chunk outright
"""

from __future__ import annotations

from typing import Iterable


class BatchStepError(Exception):
    """Base exception for batchstep."""
    pass


class NotFoundError(BatchStepError):
    """A chunk or job instance id that does not exist in storage."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class ValidationError(BatchStepError):
    """
    A chunk creation request that cannot be satisfied.

    Examples:
    - the referenced job instance does not exist
    - the step id is not part of the job definition
    """
    pass


class IllegalTransitionError(BatchStepError):
    """
    A status change that is not part of the transition table.

    This signals a programming error at the call site. Racing callers that
    request a legal transition never see it; they get zero rows affected.
    """

    def __init__(self, from_statuses: Iterable[object], to_status: object) -> None:
        sources = ", ".join(str(s) for s in from_statuses) or "<none>"
        super().__init__(f"Illegal work chunk transition {sources} -> {to_status}")
        self.from_statuses = tuple(from_statuses)
        self.to_status = to_status


class StorageUnavailableError(BatchStepError):
    """
    The durable store cannot be reached.

    Fatal to the current operation. The maintenance runner retries on its next
    scheduled pass; nothing in the transition engine loops on it.
    """
    pass


class JobStepFailedError(BatchStepError):
    """
    Raised by a step worker when its chunk can never succeed.

    The executor moves the chunk to FAILED instead of ERRORED.
    """
    pass


__all__ = [
    "BatchStepError",
    "NotFoundError",
    "ValidationError",
    "IllegalTransitionError",
    "StorageUnavailableError",
    "JobStepFailedError",
]
