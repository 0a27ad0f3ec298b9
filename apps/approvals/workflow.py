"""
Approval request state machine.

    pending  -> approved | rejected | cancelled
    approved -> applied  | failed

Every request ends in exactly one of the terminal statuses.
"""
from apps.approvals.models import ApprovalStatus

TRANSITIONS = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
    }),
    ApprovalStatus.APPROVED: frozenset({
        ApprovalStatus.APPLIED,
        ApprovalStatus.FAILED,
    }),
}

TERMINAL_STATUSES = frozenset({
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
    ApprovalStatus.APPLIED,
    ApprovalStatus.FAILED,
})

# Timestamp field stamped when a request enters each status
STATUS_TIMESTAMPS = {
    ApprovalStatus.APPROVED: 'approved_at',
    ApprovalStatus.REJECTED: 'rejected_at',
    ApprovalStatus.CANCELLED: 'cancelled_at',
    ApprovalStatus.APPLIED: 'applied_at',
}


def can_transition(from_status, to_status):
    """Return True if the state machine allows ``from_status -> to_status``."""
    return to_status in TRANSITIONS.get(from_status, frozenset())
