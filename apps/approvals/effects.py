"""
Effects applied once an approval request is approved.

Each effect receives the request and returns a diff describing the change
for the audit trail. A domain precondition that no longer holds raises
EffectError; the request is then recorded as failed.
"""
import logging
from decimal import Decimal, InvalidOperation

from apps.approvals.models import ApprovalAction
from apps.rbac.models import ActiveContext, EmployeeApprovalStatus, Membership, Role

logger = logging.getLogger(__name__)


class EffectError(Exception):
    """Raised when an approved change can no longer be applied."""


def add_owner(request):
    membership, created = Membership.objects.get_or_create(
        profile_id=request.target_profile_id,
        company_id=request.company_id,
        role=Role.OWNER,
        defaults={'is_primary_owner': False},
    )
    return {
        'membership_id': str(membership.id),
        'profile_id': str(request.target_profile_id),
        'created': created,
    }


def remove_owner(request):
    if Membership.objects.owner_count(request.company_id) <= 1:
        raise EffectError('Cannot remove the last remaining owner')

    deleted, _ = Membership.objects.filter(
        profile_id=request.target_profile_id,
        company_id=request.company_id,
        role=Role.OWNER,
    ).delete()

    if not deleted:
        raise EffectError('Target profile is no longer an owner')

    contexts_cleared, _ = ActiveContext.objects.filter(
        profile_id=request.target_profile_id,
        company_id=request.company_id,
        role=Role.OWNER,
    ).delete()

    return {
        'profile_id': str(request.target_profile_id),
        'removed': True,
        'context_cleared': bool(contexts_cleared),
    }


def employee_pay_change(request):
    if 'hourly_rate' not in request.payload:
        raise EffectError('Missing hourly rate in approval payload')

    raw_rate = request.payload['hourly_rate']
    try:
        new_rate = None if raw_rate is None else Decimal(str(raw_rate))
    except InvalidOperation:
        raise EffectError(f'Invalid hourly rate in approval payload: {raw_rate!r}')

    membership = Membership.objects.filter(
        id=request.entity_id,
        company_id=request.company_id,
        role=Role.EMPLOYEE,
    ).first()
    if membership is None:
        raise EffectError('Employee membership not found')
    if membership.approval_status != EmployeeApprovalStatus.APPROVED:
        raise EffectError('Employee is no longer approved')

    previous_rate = membership.hourly_rate
    membership.hourly_rate = new_rate
    membership.save(update_fields=['hourly_rate', 'updated_at'])

    return {
        'membership_id': str(membership.id),
        'hourly_rate': {
            'before': str(previous_rate) if previous_rate is not None else None,
            'after': str(new_rate) if new_rate is not None else None,
        },
    }


EFFECTS = {
    ApprovalAction.ADD_OWNER: add_owner,
    ApprovalAction.REMOVE_OWNER: remove_owner,
    ApprovalAction.EMPLOYEE_PAY_CHANGE: employee_pay_change,
}


def apply_effect(request):
    """Run the effect registered for the request's action."""
    effect = EFFECTS.get(request.action)
    if effect is None:
        raise EffectError(f'Unsupported approval action: {request.action}')

    logger.info(
        "Applying approval effect",
        extra={
            'approval_id': str(request.id),
            'action': request.action,
            'company_id': str(request.company_id),
        }
    )
    return effect(request)
