"""
Approval workflow service.

Every status change goes through ApprovalService.transition, a conditional
update guarded on the current status. The database serializes concurrent
callers: exactly one moves a request out of a status, every other caller
gets Conflict.
"""
import logging
import math
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple, List
from django.conf import settings
from django.db import transaction, IntegrityError
from django.utils import timezone

from apps.approvals.effects import EffectError, apply_effect
from apps.approvals.models import (
    ApprovalRequest, ApprovalDecision, ApprovalStatus, ApprovalAction,
    DecisionType, OWNER_ACTIONS,
)
from apps.approvals.workflow import can_transition, STATUS_TIMESTAMPS
from apps.core.exceptions import Conflict, Internal, NotFound, Unauthorized, ValidationError
from apps.core.logging import SecurityLogger
from apps.core.sentry_utils import add_breadcrumb, capture_exception
from apps.rbac.models import AuditLog, Membership, Profile, Role, EmployeeApprovalStatus
from apps.rbac.services import MembershipResolver, parse_uuid, validate_four_eyes

logger = logging.getLogger(__name__)


def parse_action(value) -> ApprovalAction:
    try:
        return ApprovalAction(value)
    except ValueError:
        raise ValidationError(
            'Validation error',
            details={'action': [f"'{value}' is not a valid action. Expected one of: {', '.join(ApprovalAction.values)}."]}
        )


class ApprovalService:
    """
    Service for creating, deciding on and applying approval requests.
    """

    @classmethod
    def transition(cls, approval: ApprovalRequest, from_status, to_status,
                   actor: Optional[Profile] = None, http_request=None, **fields) -> ApprovalRequest:
        """
        Move a request from ``from_status`` to ``to_status``.

        Issues ``UPDATE ... SET status=to WHERE id=R AND status=from``; the
        entry timestamp for ``to_status`` is stamped unless given in fields.

        Raises:
            Conflict: If the pair is not allowed or the request is no longer
                in ``from_status``
        """
        from_status = ApprovalStatus(from_status)
        to_status = ApprovalStatus(to_status)
        if not can_transition(from_status, to_status):
            raise Conflict(
                f"Cannot move approval request from {from_status.value} to {to_status.value}"
            )

        now = timezone.now()
        timestamp_field = STATUS_TIMESTAMPS.get(to_status)
        if timestamp_field:
            fields.setdefault(timestamp_field, now)

        updated = ApprovalRequest.objects.filter(
            id=approval.id,
            status=from_status,
        ).update(status=to_status, updated_at=now, **fields)

        if not updated:
            logger.warning(
                "Approval transition lost to a concurrent change",
                extra={
                    'approval_id': str(approval.id),
                    'from_status': from_status.value,
                    'to_status': to_status.value,
                }
            )
            raise Conflict(f'Approval request is no longer {from_status.value}')

        approval.refresh_from_db()

        logger.info(
            "Approval request transitioned",
            extra={
                'approval_id': str(approval.id),
                'company_id': str(approval.company_id),
                'from_status': from_status.value,
                'to_status': to_status.value,
            }
        )
        AuditLog.log_action(
            action=f'approval_request.{to_status.value}',
            actor=actor,
            company=approval.company_id,
            target_type='ApprovalRequest',
            target_id=approval.id,
            diff={'status': {'before': from_status.value, 'after': to_status.value}},
            metadata={'action': approval.action},
            request=http_request,
        )
        add_breadcrumb(
            'approvals',
            f'Approval request {from_status.value} -> {to_status.value}',
            data={'approval_id': str(approval.id)},
        )
        return approval

    @staticmethod
    def required_approvals_for(action, owner_count: int) -> int:
        """
        Approve decisions needed from owners other than the requester.

        Owner changes need a majority of the other owners; pay changes need
        one other owner. A sole owner needs nobody.
        """
        if owner_count <= 1:
            return 0
        if action in OWNER_ACTIONS:
            return math.ceil((owner_count - 1) / 2)
        return 1

    # Creation

    @classmethod
    def create_request(cls, actor: Profile, company_id, action, target_profile_id=None,
                       target_email=None, entity_id=None, payload=None,
                       http_request=None) -> Optional[ApprovalRequest]:
        """
        Create an approval request on behalf of a company owner.

        Requests start ``pending``; when no other owner's approval is needed
        the request is approved at once and, except for owner removal, its
        effect applied.

        Returns:
            The request, or None for a pay change that changes nothing
        """
        company_id = parse_uuid(company_id, 'company_id')
        MembershipResolver.require_role(actor, company_id, Role.OWNER)
        action = parse_action(action)

        try:
            with transaction.atomic():
                # Owner rows stay locked until the request exists
                owner_count = len(Membership.objects.owners(company_id).select_for_update())

                if action in OWNER_ACTIONS:
                    fields = cls._owner_change_fields(company_id, action, target_profile_id, target_email)
                else:
                    fields = cls._pay_change_fields(company_id, entity_id, payload or {})
                    if fields is None:
                        return None

                required = cls.required_approvals_for(action, owner_count)
                approval = ApprovalRequest.objects.create(
                    company_id=company_id,
                    action=action,
                    requested_by=actor,
                    status=ApprovalStatus.PENDING,
                    required_approvals=required,
                    **fields
                )
        except IntegrityError:
            raise Conflict('A pending request already exists for this change')

        logger.info(
            "Approval request created",
            extra={
                'approval_id': str(approval.id),
                'company_id': str(company_id),
                'action': action.value,
                'required_approvals': required,
            }
        )
        AuditLog.log_action(
            action='approval_request.created',
            actor=actor,
            company=company_id,
            target_type='ApprovalRequest',
            target_id=approval.id,
            metadata={'action': action.value, 'required_approvals': required},
            request=http_request,
        )

        if required == 0:
            approval = cls._mark_approved(approval, actor, http_request)
            if approval.action != ApprovalAction.REMOVE_OWNER:
                approval = cls._run_effect(approval, actor, http_request)

        return approval

    @classmethod
    def _owner_change_fields(cls, company_id, action, target_profile_id, target_email):
        target = cls._resolve_target_profile(target_profile_id, target_email)

        owners = list(Membership.objects.owners(company_id))
        target_membership = next((m for m in owners if m.profile_id == target.id), None)

        if action == ApprovalAction.ADD_OWNER and target_membership is not None:
            raise ValidationError(
                'Target user is already an owner',
                details={'target_profile_id': ['Target user is already an owner.']}
            )

        if action == ApprovalAction.REMOVE_OWNER:
            if target_membership is None:
                raise ValidationError(
                    'Target user is not an owner',
                    details={'target_profile_id': ['Target user is not an owner.']}
                )
            if len(owners) <= 1:
                raise ValidationError('Cannot remove the last remaining owner')

        label = target.get_full_name()
        verb = 'Add owner' if action == ApprovalAction.ADD_OWNER else 'Remove owner'
        return {
            'target_profile': target,
            'entity_table': 'memberships',
            'entity_id': target_membership.id if target_membership else None,
            'entity_label': label,
            'summary': f'{verb}: {label}',
            'cooldown_hours': (
                settings.OWNER_REMOVAL_COOLDOWN_HOURS
                if action == ApprovalAction.REMOVE_OWNER else 0
            ),
        }

    @staticmethod
    def _resolve_target_profile(target_profile_id, target_email) -> Profile:
        if target_profile_id:
            profile = Profile.objects.filter(id=parse_uuid(target_profile_id, 'target_profile_id')).first()
            if profile is None:
                raise NotFound('Target profile not found')
            return profile

        if target_email:
            profile = Profile.objects.by_email(target_email)
            if profile is None:
                raise NotFound('No user found with that email')
            return profile

        raise ValidationError(
            'Validation error',
            details={'target_profile_id': ['Either target_profile_id or target_email is required.']}
        )

    @staticmethod
    def _pay_change_fields(company_id, entity_id, payload):
        if not entity_id:
            raise ValidationError(
                'Validation error',
                details={'entity_id': ['Employee membership id is required.']}
            )
        if 'hourly_rate' not in payload:
            raise ValidationError(
                'Validation error',
                details={'hourly_rate': ['This field is required.']}
            )

        employee = (
            Membership.objects
            .filter(
                id=parse_uuid(entity_id, 'entity_id'),
                company_id=company_id,
                role=Role.EMPLOYEE,
            )
            .select_related('profile')
            .first()
        )
        if employee is None:
            raise NotFound('Employee not found')
        if employee.approval_status != EmployeeApprovalStatus.APPROVED:
            raise ValidationError(
                'Employee is not approved',
                details={'entity_id': ['Pay can only be changed for approved employees.']}
            )

        new_rate = payload['hourly_rate']
        try:
            new_rate = None if new_rate is None else Decimal(str(new_rate)).quantize(Decimal('0.01'))
        except InvalidOperation:
            raise ValidationError(
                'Validation error',
                details={'hourly_rate': ['A valid number is required.']}
            )
        current_rate = employee.hourly_rate

        if current_rate == new_rate:
            return None

        return {
            'target_profile': employee.profile,
            'entity_table': 'memberships',
            'entity_id': employee.id,
            'entity_label': employee.profile.get_full_name(),
            'summary': f'Pay change: ${current_rate or Decimal("0.00"):.2f} -> ${new_rate or Decimal("0.00"):.2f}',
            'payload': {'hourly_rate': str(new_rate) if new_rate is not None else None},
        }

    # Decisions

    @classmethod
    def approve(cls, actor: Profile, approval_id, note='', http_request=None) -> ApprovalRequest:
        """
        Record an approve decision and move the request on once the threshold is met.

        Removing another owner also needs the target owner's own approval.
        Approved owner additions and pay changes are applied at once; owner
        removals wait for their cooldown and the apply call.
        """
        approval_id = parse_uuid(approval_id, 'approval_id')

        with transaction.atomic():
            approval = cls._load_for_decision(actor, approval_id, 'approve', http_request)
            cls._record_decision(approval, actor, DecisionType.APPROVE, note, http_request)

            if cls._meets_threshold(approval):
                approval = cls._mark_approved(approval, actor, http_request)

        if approval.status == ApprovalStatus.APPROVED and approval.action != ApprovalAction.REMOVE_OWNER:
            approval = cls._run_effect(approval, actor, http_request)

        return approval

    @classmethod
    def reject(cls, actor: Profile, approval_id, note='', http_request=None) -> ApprovalRequest:
        """Record a reject decision; any single rejection rejects the request."""
        approval_id = parse_uuid(approval_id, 'approval_id')

        with transaction.atomic():
            approval = cls._load_for_decision(actor, approval_id, 'reject', http_request)
            cls._record_decision(approval, actor, DecisionType.REJECT, note, http_request)
            return cls.transition(
                approval,
                ApprovalStatus.PENDING,
                ApprovalStatus.REJECTED,
                actor=actor,
                http_request=http_request,
            )

    @classmethod
    def cancel(cls, actor: Profile, approval_id, http_request=None) -> ApprovalRequest:
        """Withdraw a pending request. Only its requester may cancel it."""
        approval_id = parse_uuid(approval_id, 'approval_id')

        with transaction.atomic():
            approval = cls._load_for_owner(actor, approval_id, lock=True)

            if approval.requested_by_id != actor.id:
                raise Unauthorized('Only the requester can cancel this approval')

            if approval.status != ApprovalStatus.PENDING:
                raise Conflict(
                    f'Only pending requests can be cancelled; this request is {approval.status}'
                )

            return cls.transition(
                approval,
                ApprovalStatus.PENDING,
                ApprovalStatus.CANCELLED,
                actor=actor,
                http_request=http_request,
            )

    @classmethod
    def apply(cls, actor: Profile, approval_id, http_request=None) -> ApprovalRequest:
        """
        Apply the effect of an approved request once its cooldown has elapsed.

        The outcome is recorded as ``applied`` or ``failed`` and never retried.
        """
        approval_id = parse_uuid(approval_id, 'approval_id')
        approval = cls._load_for_owner(actor, approval_id)

        if approval.status != ApprovalStatus.APPROVED:
            raise Conflict(
                f'Only approved requests can be applied; this request is {approval.status}'
            )

        if approval.effective_at and approval.effective_at > timezone.now():
            raise Conflict(
                'Cooldown period has not completed yet',
                details={'effective_at': approval.effective_at.isoformat()}
            )

        return cls._run_effect(approval, actor, http_request)

    @classmethod
    def _load_for_owner(cls, actor, approval_id, lock=False) -> ApprovalRequest:
        qs = ApprovalRequest.objects.all()
        if lock:
            qs = qs.select_for_update()

        approval = qs.filter(id=approval_id).first()
        if approval is None:
            raise NotFound('Approval request not found')

        if not Membership.objects.is_owner(actor.id, approval.company_id):
            if approval.company_id in MembershipResolver.company_ids(actor):
                SecurityLogger.log_permission_denied(actor, approval.company_id, Role.OWNER.value)
            else:
                SecurityLogger.log_cross_tenant_access(
                    actor, approval.company_id, 'ApprovalRequest', approval.id
                )
            raise Unauthorized('Unauthorized: not an owner for this company')

        return approval

    @classmethod
    def _load_for_decision(cls, actor, approval_id, operation, http_request) -> ApprovalRequest:
        approval = cls._load_for_owner(actor, approval_id, lock=True)

        if approval.status != ApprovalStatus.PENDING:
            raise Conflict(
                f'Only pending requests can be decided on; this request is {approval.status}'
            )

        try:
            validate_four_eyes(approval.requested_by_id, actor.id)
        except Unauthorized:
            SecurityLogger.log_four_eyes_violation(
                initiator_id=str(approval.requested_by_id),
                approver_id=str(actor.id),
                company_id=str(approval.company_id),
                operation=f'approval_{operation}',
                ip_address=http_request.META.get('REMOTE_ADDR') if http_request else None,
            )
            raise

        return approval

    @staticmethod
    def _record_decision(approval, actor, decision, note, http_request) -> ApprovalDecision:
        try:
            with transaction.atomic():
                record = ApprovalDecision.objects.create(
                    request=approval,
                    approver=actor,
                    decision=decision,
                    note=note or '',
                )
        except IntegrityError:
            raise Conflict('You have already decided on this request')

        AuditLog.log_action(
            action=f'approval_decision.{DecisionType(decision).value}',
            actor=actor,
            company=approval.company_id,
            target_type='ApprovalRequest',
            target_id=approval.id,
            metadata={'decision_id': str(record.id), 'note': note or ''},
            request=http_request,
        )
        return record

    @staticmethod
    def _meets_threshold(approval) -> bool:
        approvers = set(
            approval.decisions
            .filter(decision=DecisionType.APPROVE)
            .values_list('approver_id', flat=True)
        )
        if len(approvers) < approval.required_approvals:
            return False

        target_must_approve = (
            approval.action == ApprovalAction.REMOVE_OWNER
            and approval.target_profile_id != approval.requested_by_id
        )
        if target_must_approve and approval.target_profile_id not in approvers:
            return False

        return True

    @classmethod
    def _mark_approved(cls, approval, actor, http_request) -> ApprovalRequest:
        now = timezone.now()
        fields = {'approved_at': now}
        if approval.action == ApprovalAction.REMOVE_OWNER:
            fields['effective_at'] = now + timedelta(hours=approval.cooldown_hours)

        return cls.transition(
            approval,
            ApprovalStatus.PENDING,
            ApprovalStatus.APPROVED,
            actor=actor,
            http_request=http_request,
            **fields
        )

    # Effects

    @classmethod
    def _run_effect(cls, approval, actor, http_request) -> ApprovalRequest:
        """
        Claim the effect, run it and record the outcome.

        The claim is a conditional update on ``effect_attempted_at IS NULL``
        so an effect runs at most once.
        """
        now = timezone.now()
        claimed = ApprovalRequest.objects.filter(
            id=approval.id,
            status=ApprovalStatus.APPROVED,
            effect_attempted_at__isnull=True,
        ).update(effect_attempted_at=now, updated_at=now)

        if not claimed:
            raise Conflict('This approval has already been applied or is being applied')

        approval.refresh_from_db()

        try:
            with transaction.atomic():
                diff = apply_effect(approval)
        except EffectError as e:
            logger.warning(
                "Approval effect failed",
                extra={
                    'approval_id': str(approval.id),
                    'action': approval.action,
                    'reason': str(e),
                }
            )
            return cls.transition(
                approval,
                ApprovalStatus.APPROVED,
                ApprovalStatus.FAILED,
                actor=actor,
                http_request=http_request,
                applied_by=actor,
                failure_reason=str(e),
            )
        except Exception as e:
            logger.error(
                "Unexpected error applying approval effect",
                extra={
                    'approval_id': str(approval.id),
                    'action': approval.action,
                },
                exc_info=True
            )
            capture_exception(e, approval={'id': str(approval.id), 'action': approval.action})
            cls.transition(
                approval,
                ApprovalStatus.APPROVED,
                ApprovalStatus.FAILED,
                actor=actor,
                http_request=http_request,
                applied_by=actor,
                failure_reason='Unexpected error while applying the change',
            )
            raise Internal('Failed to apply the approved change') from e

        AuditLog.log_action(
            action='approval_request.effect_applied',
            actor=actor,
            company=approval.company_id,
            target_type='ApprovalRequest',
            target_id=approval.id,
            diff=diff,
            metadata={'action': approval.action},
            request=http_request,
        )
        return cls.transition(
            approval,
            ApprovalStatus.APPROVED,
            ApprovalStatus.APPLIED,
            actor=actor,
            http_request=http_request,
            applied_by=actor,
        )

    # Queries

    @classmethod
    def list_requests(cls, actor: Profile, company_id=None, status=None, owner_changes=False,
                      limit=50, offset=0) -> Tuple[List[ApprovalRequest], int]:
        """
        List requests in companies the actor owns, newest first.

        Filters are exact. When ``company_id`` is given it must be one of the
        actor's owner companies.

        Returns:
            (page of requests with decisions, total matching count)
        """
        if company_id:
            company_ids = {MembershipResolver.resolve_company(actor, company_id, role=Role.OWNER)}
        else:
            company_ids = MembershipResolver.company_ids(actor, Role.OWNER)

        if status and status not in ApprovalStatus.values:
            raise ValidationError(
                'Validation error',
                details={'status': [f"'{status}' is not a valid status."]}
            )

        qs = ApprovalRequest.objects.for_companies(company_ids)
        if status:
            qs = qs.filter(status=status)
        if owner_changes:
            qs = qs.owner_changes()

        total = qs.count()
        page = list(
            qs.select_related('requested_by', 'target_profile', 'applied_by')
            .prefetch_related('decisions__approver')
            .order_by('-created_at', '-id')[offset:offset + limit]
        )
        return page, total
