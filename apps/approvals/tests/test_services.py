"""
Tests for the approval workflow service.

Covers creation thresholds, decisions under the four-eyes rule, cooldowns,
effect outcomes, concurrency on status transitions and tenant scoping.
"""
import uuid
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch
from django.db.models import QuerySet
from django.utils import timezone

from apps.approvals.models import ApprovalAction, ApprovalDecision, ApprovalRequest, ApprovalStatus
from apps.approvals.services import ApprovalService
from apps.core.exceptions import Conflict, Internal, NotFound, Unauthorized, ValidationError
from apps.rbac.models import AuditLog, EmployeeApprovalStatus, Membership


@pytest.fixture
def three_owner_company(co_owned_company, third_owner, add_owner):
    """``company`` owned by ``owner``, ``second_owner`` and ``third_owner``."""
    add_owner(third_owner, co_owned_company)
    return co_owned_company


def add_owner_request(actor, company, target):
    return ApprovalService.create_request(
        actor, company.id, ApprovalAction.ADD_OWNER, target_profile_id=target.id
    )


@pytest.mark.django_db
class TestCreateRequest:
    """Test ApprovalService.create_request."""

    def test_sole_owner_change_applies_at_once(self, owner, company, third_owner):
        approval = add_owner_request(owner, company, third_owner)

        assert approval.status == ApprovalStatus.APPLIED
        assert approval.required_approvals == 0
        assert approval.applied_by == owner
        assert Membership.objects.is_owner(third_owner.id, company.id)

    def test_co_owned_change_waits_for_approval(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        assert approval.status == ApprovalStatus.PENDING
        assert approval.required_approvals == 1
        assert approval.summary == 'Add owner: Tara Third'
        assert not Membership.objects.is_owner(third_owner.id, co_owned_company.id)
        assert AuditLog.objects.filter(action='approval_request.created', target_id=approval.id).exists()

    def test_target_by_email(self, owner, co_owned_company, third_owner):
        approval = ApprovalService.create_request(
            owner, co_owned_company.id, 'add_owner', target_email='third@ACME.TEST'
        )

        assert approval.target_profile == third_owner

    def test_unknown_target_email(self, owner, company):
        with pytest.raises(NotFound):
            ApprovalService.create_request(owner, company.id, 'add_owner', target_email='ghost@acme.test')

    def test_unknown_target_id(self, owner, company):
        with pytest.raises(NotFound):
            ApprovalService.create_request(owner, company.id, 'add_owner', target_profile_id=uuid.uuid4())

    def test_target_already_owner(self, owner, co_owned_company, second_owner):
        with pytest.raises(ValidationError, match='already an owner'):
            add_owner_request(owner, co_owned_company, second_owner)

    def test_remove_non_owner(self, owner, company, third_owner):
        with pytest.raises(ValidationError, match='not an owner'):
            ApprovalService.create_request(
                owner, company.id, 'remove_owner', target_profile_id=third_owner.id
            )

    def test_remove_last_owner(self, owner, company):
        with pytest.raises(ValidationError, match='last remaining owner'):
            ApprovalService.create_request(owner, company.id, 'remove_owner', target_profile_id=owner.id)

    def test_unknown_action(self, owner, company):
        with pytest.raises(ValidationError):
            ApprovalService.create_request(owner, company.id, 'delete_company')

    def test_requires_owner(self, employee, employee_membership, company, third_owner):
        with pytest.raises(Unauthorized):
            add_owner_request(employee, company, third_owner)

    def test_foreign_company(self, owner, company, other_company, third_owner):
        with pytest.raises(Unauthorized):
            add_owner_request(owner, other_company, third_owner)

        assert not ApprovalRequest.objects.exists()

    def test_duplicate_pending_request(self, owner, second_owner, co_owned_company, third_owner):
        add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Conflict):
            add_owner_request(second_owner, co_owned_company, third_owner)

    def test_locks_owner_rows(self, owner, co_owned_company, third_owner):
        with patch.object(
            QuerySet, 'select_for_update', autospec=True, side_effect=lambda qs, *args, **kwargs: qs
        ) as mock_lock:
            add_owner_request(owner, co_owned_company, third_owner)

        locked = [call.args[0] for call in mock_lock.call_args_list]
        assert any(qs.model is Membership for qs in locked)

    def test_pay_change_pending(self, owner, co_owned_company, employee_membership):
        approval = ApprovalService.create_request(
            owner, co_owned_company.id, 'employee_pay_change',
            entity_id=employee_membership.id, payload={'hourly_rate': Decimal('25')},
        )

        assert approval.status == ApprovalStatus.PENDING
        assert approval.payload == {'hourly_rate': '25.00'}
        assert approval.summary == 'Pay change: $20.00 -> $25.00'

    def test_pay_change_without_change(self, owner, co_owned_company, employee_membership):
        approval = ApprovalService.create_request(
            owner, co_owned_company.id, 'employee_pay_change',
            entity_id=employee_membership.id, payload={'hourly_rate': '20.00'},
        )

        assert approval is None
        assert not ApprovalRequest.objects.exists()

    def test_pay_change_sole_owner_applies(self, owner, company, employee_membership):
        approval = ApprovalService.create_request(
            owner, company.id, 'employee_pay_change',
            entity_id=employee_membership.id, payload={'hourly_rate': '31.25'},
        )

        employee_membership.refresh_from_db()
        assert approval.status == ApprovalStatus.APPLIED
        assert employee_membership.hourly_rate == Decimal('31.25')

    def test_pay_change_for_foreign_employee(self, outsider, other_company, employee_membership):
        with pytest.raises(NotFound):
            ApprovalService.create_request(
                outsider, other_company.id, 'employee_pay_change',
                entity_id=employee_membership.id, payload={'hourly_rate': '1.00'},
            )

    def test_pay_change_for_unapproved_employee(self, owner, company, employee_membership):
        employee_membership.approval_status = EmployeeApprovalStatus.PENDING
        employee_membership.save()

        with pytest.raises(ValidationError, match='not approved') as exc_info:
            ApprovalService.create_request(
                owner, company.id, 'employee_pay_change',
                entity_id=employee_membership.id, payload={'hourly_rate': '35.00'},
            )

        assert 'entity_id' in exc_info.value.details
        employee_membership.refresh_from_db()
        assert employee_membership.hourly_rate == Decimal('20.00')
        assert not ApprovalRequest.objects.exists()

    def test_pay_change_with_non_numeric_rate(self, owner, company, employee_membership):
        with pytest.raises(ValidationError) as exc_info:
            ApprovalService.create_request(
                owner, company.id, 'employee_pay_change',
                entity_id=employee_membership.id, payload={'hourly_rate': 'twenty'},
            )

        assert 'hourly_rate' in exc_info.value.details
        assert not ApprovalRequest.objects.exists()


@pytest.mark.django_db
class TestDecisions:
    """Test approve, reject and cancel."""

    def test_other_owner_approves_and_effect_applies(self, owner, second_owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        approval = ApprovalService.approve(second_owner, approval.id, note='Welcome')

        assert approval.status == ApprovalStatus.APPLIED
        assert approval.approved_at is not None
        assert approval.applied_at is not None
        assert Membership.objects.is_owner(third_owner.id, co_owned_company.id)
        assert ApprovalDecision.objects.get(request=approval).note == 'Welcome'

    @patch('apps.approvals.services.SecurityLogger.log_four_eyes_violation')
    def test_requester_cannot_approve(self, mock_log, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Unauthorized):
            ApprovalService.approve(owner, approval.id)

        mock_log.assert_called_once()
        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.PENDING
        assert not approval.decisions.exists()

    def test_requester_cannot_reject(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Unauthorized):
            ApprovalService.reject(owner, approval.id)

    def test_reject(self, owner, second_owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        approval = ApprovalService.reject(second_owner, approval.id, note='Not yet')

        assert approval.status == ApprovalStatus.REJECTED
        assert approval.rejected_at is not None
        assert not Membership.objects.is_owner(third_owner.id, co_owned_company.id)

    def test_decision_on_decided_request_conflicts(self, owner, second_owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)
        ApprovalService.reject(second_owner, approval.id)

        with pytest.raises(Conflict):
            ApprovalService.approve(second_owner, approval.id)
        with pytest.raises(Conflict):
            ApprovalService.reject(second_owner, approval.id)

        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.REJECTED

    def test_same_approver_twice(self, owner, second_owner, three_owner_company, third_owner):
        approval = ApprovalService.create_request(
            owner, three_owner_company.id, 'remove_owner', target_profile_id=third_owner.id
        )
        ApprovalService.approve(second_owner, approval.id)

        with pytest.raises(Conflict, match='already decided'):
            ApprovalService.approve(second_owner, approval.id)

    def test_removal_needs_target_approval(self, owner, second_owner, three_owner_company, third_owner):
        approval = ApprovalService.create_request(
            owner, three_owner_company.id, 'remove_owner', target_profile_id=third_owner.id
        )

        approval = ApprovalService.approve(second_owner, approval.id)
        assert approval.status == ApprovalStatus.PENDING

        approval = ApprovalService.approve(third_owner, approval.id)
        assert approval.status == ApprovalStatus.APPROVED
        assert approval.effective_at is not None
        # Removal waits for its cooldown
        assert Membership.objects.is_owner(third_owner.id, three_owner_company.id)

    def test_outsider_cannot_decide(self, owner, co_owned_company, third_owner, outsider, other_company):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with patch('apps.approvals.services.SecurityLogger.log_cross_tenant_access') as mock_log:
            with pytest.raises(Unauthorized):
                ApprovalService.approve(outsider, approval.id)

        mock_log.assert_called_once()
        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.PENDING

    def test_employee_cannot_decide(self, owner, co_owned_company, third_owner, employee, employee_membership):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with patch('apps.approvals.services.SecurityLogger.log_permission_denied') as mock_log:
            with pytest.raises(Unauthorized):
                ApprovalService.approve(employee, approval.id)

        mock_log.assert_called_once()

    def test_unknown_request(self, owner, company):
        with pytest.raises(NotFound):
            ApprovalService.approve(owner, uuid.uuid4())

    def test_malformed_id(self, owner, company):
        with pytest.raises(ValidationError):
            ApprovalService.approve(owner, 'abc')

    def test_cancel(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        approval = ApprovalService.cancel(owner, approval.id)

        assert approval.status == ApprovalStatus.CANCELLED
        assert approval.cancelled_at is not None

    def test_only_requester_cancels(self, owner, second_owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Unauthorized):
            ApprovalService.cancel(second_owner, approval.id)

    def test_cancel_non_pending(self, owner, company, third_owner):
        approval = add_owner_request(owner, company, third_owner)

        with pytest.raises(Conflict):
            ApprovalService.cancel(owner, approval.id)

    def test_cancelled_request_frees_the_target(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)
        ApprovalService.cancel(owner, approval.id)

        again = add_owner_request(owner, co_owned_company, third_owner)

        assert again.status == ApprovalStatus.PENDING


@pytest.mark.django_db
class TestApply:
    """Test cooldowns and effect outcomes."""

    @pytest.fixture
    def approved_removal(self, owner, second_owner, co_owned_company):
        approval = ApprovalService.create_request(
            owner, co_owned_company.id, 'remove_owner', target_profile_id=second_owner.id
        )
        return ApprovalService.approve(second_owner, approval.id)

    def test_removal_is_approved_with_cooldown(self, approved_removal, settings):
        assert approved_removal.status == ApprovalStatus.APPROVED
        assert approved_removal.cooldown_hours == settings.OWNER_REMOVAL_COOLDOWN_HOURS
        expected = approved_removal.approved_at + timedelta(hours=approved_removal.cooldown_hours)
        assert approved_removal.effective_at == expected

    def test_apply_before_cooldown(self, owner, approved_removal):
        with pytest.raises(Conflict) as exc_info:
            ApprovalService.apply(owner, approved_removal.id)

        assert 'effective_at' in exc_info.value.details
        approved_removal.refresh_from_db()
        assert approved_removal.status == ApprovalStatus.APPROVED

    def test_apply_after_cooldown(self, owner, second_owner, co_owned_company, approved_removal):
        ApprovalRequest.objects.filter(id=approved_removal.id).update(
            effective_at=timezone.now() - timedelta(minutes=1)
        )

        approval = ApprovalService.apply(owner, approved_removal.id)

        assert approval.status == ApprovalStatus.APPLIED
        assert not Membership.objects.is_owner(second_owner.id, co_owned_company.id)
        assert AuditLog.objects.filter(action='approval_request.effect_applied').exists()

    def test_apply_twice(self, owner, approved_removal):
        ApprovalRequest.objects.filter(id=approved_removal.id).update(effective_at=timezone.now())
        ApprovalService.apply(owner, approved_removal.id)

        with pytest.raises(Conflict):
            ApprovalService.apply(owner, approved_removal.id)

    def test_apply_pending_request(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Conflict):
            ApprovalService.apply(owner, approval.id)

    def test_failed_effect_is_recorded(self, owner, second_owner, co_owned_company, approved_removal):
        ApprovalRequest.objects.filter(id=approved_removal.id).update(effective_at=timezone.now())
        # The second owner left on their own in the meantime
        Membership.objects.filter(profile=second_owner, company=co_owned_company).delete()

        approval = ApprovalService.apply(owner, approved_removal.id)

        assert approval.status == ApprovalStatus.FAILED
        assert 'last remaining owner' in approval.failure_reason
        assert Membership.objects.is_owner(owner.id, co_owned_company.id)

    def test_failed_request_is_not_retried(self, owner, second_owner, co_owned_company, approved_removal):
        ApprovalRequest.objects.filter(id=approved_removal.id).update(effective_at=timezone.now())
        Membership.objects.filter(profile=second_owner, company=co_owned_company).delete()
        ApprovalService.apply(owner, approved_removal.id)

        with pytest.raises(Conflict):
            ApprovalService.apply(owner, approved_removal.id)

    @patch('apps.approvals.services.capture_exception')
    @patch('apps.approvals.services.apply_effect', side_effect=RuntimeError('disk full'))
    def test_unexpected_effect_error(self, mock_effect, mock_capture, owner, company, third_owner):
        with pytest.raises(Internal):
            add_owner_request(owner, company, third_owner)

        approval = ApprovalRequest.objects.get()
        assert approval.status == ApprovalStatus.FAILED
        assert approval.effect_attempted_at is not None
        mock_capture.assert_called_once()


@pytest.mark.django_db
class TestConcurrency:
    """Concurrent moves out of the same status."""

    def test_only_one_transition_wins(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)
        stale_a = ApprovalRequest.objects.get(id=approval.id)
        stale_b = ApprovalRequest.objects.get(id=approval.id)

        ApprovalService.transition(stale_a, ApprovalStatus.PENDING, ApprovalStatus.APPROVED)
        with pytest.raises(Conflict):
            ApprovalService.transition(stale_b, ApprovalStatus.PENDING, ApprovalStatus.REJECTED)

        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.APPROVED
        assert approval.rejected_at is None

    def test_losing_approval_rolls_back_its_decision(self, owner, second_owner, third_owner,
                                                     three_owner_company, make_profile):
        target = make_profile('fourth@acme.test', 'Fay Fourth')
        approval = add_owner_request(owner, three_owner_company, target)
        stale = ApprovalRequest.objects.get(id=approval.id)
        ApprovalService.reject(second_owner, approval.id)

        with patch.object(ApprovalService, '_load_for_decision', return_value=stale):
            with pytest.raises(Conflict):
                ApprovalService.approve(third_owner, approval.id)

        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.REJECTED
        assert approval.approved_at is None
        assert not ApprovalDecision.objects.filter(request=approval, approver=third_owner).exists()
        assert not Membership.objects.is_owner(target.id, three_owner_company.id)

    def test_losing_rejection_rolls_back_its_decision(self, owner, second_owner, third_owner,
                                                      three_owner_company, make_profile):
        target = make_profile('fourth@acme.test', 'Fay Fourth')
        approval = add_owner_request(owner, three_owner_company, target)
        stale = ApprovalRequest.objects.get(id=approval.id)
        ApprovalService.approve(second_owner, approval.id)

        with patch.object(ApprovalService, '_load_for_decision', return_value=stale):
            with pytest.raises(Conflict):
                ApprovalService.reject(third_owner, approval.id)

        approval.refresh_from_db()
        assert approval.status == ApprovalStatus.APPLIED
        assert approval.rejected_at is None
        assert list(
            ApprovalDecision.objects.filter(request=approval).values_list('approver_id', flat=True)
        ) == [second_owner.id]

    def test_disallowed_pair(self, owner, co_owned_company, third_owner):
        approval = add_owner_request(owner, co_owned_company, third_owner)

        with pytest.raises(Conflict):
            ApprovalService.transition(approval, ApprovalStatus.PENDING, ApprovalStatus.APPLIED)

    def test_effect_claimed_once(self, owner, company, third_owner):
        approval = add_owner_request(owner, company, third_owner)
        ApprovalRequest.objects.filter(id=approval.id).update(status=ApprovalStatus.APPROVED)

        with pytest.raises(Conflict):
            ApprovalService._run_effect(approval, owner, None)


@pytest.mark.django_db
class TestListRequests:
    """Test ApprovalService.list_requests."""

    @pytest.fixture
    def approval_requests(self, owner, second_owner, co_owned_company, third_owner,
                 outsider, other_company, make_profile, employee_membership):
        pending = add_owner_request(owner, co_owned_company, third_owner)
        pay = ApprovalService.create_request(
            owner, co_owned_company.id, 'employee_pay_change',
            entity_id=employee_membership.id, payload={'hourly_rate': '30'},
        )
        ApprovalService.reject(second_owner, pay.id)
        foreign = ApprovalService.create_request(
            outsider, other_company.id, 'add_owner', target_profile_id=make_profile('x@globex.test').id
        )
        return {'pending': pending, 'pay': pay, 'foreign': foreign}

    def test_scoped_to_owned_companies(self, owner, approval_requests):
        page, total = ApprovalService.list_requests(owner)

        assert total == 2
        assert approval_requests['foreign'].id not in {r.id for r in page}

    def test_status_filter(self, owner, approval_requests):
        page, total = ApprovalService.list_requests(owner, status='rejected')

        assert total == 1
        assert page[0].id == approval_requests['pay'].id

    def test_owner_changes_filter(self, owner, approval_requests):
        page, _ = ApprovalService.list_requests(owner, owner_changes=True)

        assert [r.id for r in page] == [approval_requests['pending'].id]

    def test_newest_first_and_paging(self, owner, approval_requests):
        page, total = ApprovalService.list_requests(owner, limit=1, offset=0)

        assert total == 2
        assert page[0].id == approval_requests['pay'].id

    def test_foreign_company_filter(self, owner, approval_requests, other_company):
        with pytest.raises(Unauthorized):
            ApprovalService.list_requests(owner, company_id=other_company.id)

    def test_invalid_status(self, owner, approval_requests):
        with pytest.raises(ValidationError):
            ApprovalService.list_requests(owner, status='done')
