"""Dispatch lifecycle as data: (state, action) -> next state.

Anything not listed in the tables is rejected. The distribution service
consults `next_status` before every write, so the set of legal moves can be
tested without a database.
"""
from enum import Enum

from adrouter.core.errors import InvalidStateError


class DispatchStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SENT = "SENT"
    FAILED = "FAILED"
    DEFERRED = "DEFERRED"


class DispatchAction(str, Enum):
    START = "start"
    CANCEL = "cancel"
    CONFIRM_SENT = "confirm_sent"
    DEFER = "defer"
    FAIL = "fail"
    OVERRIDE_RESEND = "override_resend"
    ABSORB_INTO_DIGEST = "absorb_into_digest"


class DigestStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"


class TargetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class SuggestionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


_S = DispatchStatus
_A = DispatchAction

DISPATCH_TRANSITIONS: dict[tuple[DispatchStatus, DispatchAction], DispatchStatus] = {
    (_S.PENDING, _A.START): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, _A.CANCEL): _S.PENDING,
    (_S.PENDING, _A.CONFIRM_SENT): _S.SENT,
    (_S.IN_PROGRESS, _A.CONFIRM_SENT): _S.SENT,
    (_S.PENDING, _A.DEFER): _S.DEFERRED,
    (_S.PENDING, _A.FAIL): _S.FAILED,
    (_S.IN_PROGRESS, _A.FAIL): _S.FAILED,
    (_S.FAILED, _A.OVERRIDE_RESEND): _S.PENDING,
    (_S.DEFERRED, _A.OVERRIDE_RESEND): _S.PENDING,
    (_S.SENT, _A.OVERRIDE_RESEND): _S.PENDING,
    (_S.PENDING, _A.ABSORB_INTO_DIGEST): _S.DEFERRED,
}

DIGEST_TRANSITIONS: dict[tuple[DigestStatus, DispatchAction], DigestStatus] = {
    (DigestStatus.PENDING, _A.CONFIRM_SENT): DigestStatus.SENT,
}

# Dispatch states that only override-resend can leave.
TERMINAL_STATUSES = frozenset({_S.SENT, _S.FAILED, _S.DEFERRED})

# Statuses counted as "waiting for an operator" in stats.
OPEN_STATUSES = frozenset({_S.PENDING, _S.IN_PROGRESS})

# Target lifecycle; any move between distinct states is allowed, but
# ARCHIVED targets only come back through an explicit activation.
TARGET_TRANSITIONS: dict[TargetStatus, frozenset] = {
    TargetStatus.ACTIVE: frozenset({TargetStatus.PAUSED, TargetStatus.ARCHIVED}),
    TargetStatus.PAUSED: frozenset({TargetStatus.ACTIVE, TargetStatus.ARCHIVED}),
    TargetStatus.ARCHIVED: frozenset({TargetStatus.ACTIVE}),
}


def allowed_actions(status: DispatchStatus) -> set[DispatchAction]:
    """Actions that are legal from `status`."""
    status = DispatchStatus(status)
    return {action for (state, action) in DISPATCH_TRANSITIONS if state == status}


def next_status(status, action: DispatchAction) -> DispatchStatus:
    """
    Resolve the status a dispatch item moves to.

    Raises:
        InvalidStateError: If the action is not legal from `status`
    """
    status = DispatchStatus(status)
    action = DispatchAction(action)
    try:
        return DISPATCH_TRANSITIONS[(status, action)]
    except KeyError:
        required = sorted(s.value for (s, a) in DISPATCH_TRANSITIONS if a == action)
        raise InvalidStateError(
            f"cannot {action.value} an item in status {status.value}",
            required=" or ".join(required),
        ) from None


def next_digest_status(status, action: DispatchAction) -> DigestStatus:
    status = DigestStatus(status)
    action = DispatchAction(action)
    try:
        return DIGEST_TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidStateError(
            f"cannot {action.value} a digest in status {status.value}",
            required=DigestStatus.PENDING.value,
        ) from None


def check_target_transition(current, new) -> TargetStatus:
    current = TargetStatus(current)
    new = TargetStatus(new)
    if new not in TARGET_TRANSITIONS[current]:
        raise InvalidStateError(
            f"target is already {current.value}" if new == current
            else f"cannot move target from {current.value} to {new.value}",
        )
    return new
