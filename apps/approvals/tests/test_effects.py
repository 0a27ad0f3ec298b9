"""
Tests for effects applied to approved requests.
"""
import pytest
from decimal import Decimal

from apps.approvals.effects import EffectError, apply_effect
from apps.approvals.models import ApprovalAction, ApprovalRequest, ApprovalStatus
from apps.rbac.models import ActiveContext, EmployeeApprovalStatus, Membership, Role


def make_request(company, owner, action, **fields):
    return ApprovalRequest.objects.create(
        company=company,
        action=action,
        requested_by=owner,
        status=ApprovalStatus.APPROVED,
        **fields
    )


@pytest.mark.django_db
class TestOwnerEffects:
    """Test add_owner and remove_owner."""

    def test_add_owner(self, company, owner, third_owner):
        request = make_request(company, owner, ApprovalAction.ADD_OWNER, target_profile=third_owner)

        diff = apply_effect(request)

        assert diff['created'] is True
        assert Membership.objects.is_owner(third_owner.id, company.id)

    def test_add_owner_is_idempotent(self, co_owned_company, owner, second_owner):
        request = make_request(co_owned_company, owner, ApprovalAction.ADD_OWNER, target_profile=second_owner)

        assert apply_effect(request)['created'] is False
        assert Membership.objects.owner_count(co_owned_company.id) == 2

    def test_remove_owner(self, co_owned_company, owner, second_owner):
        request = make_request(co_owned_company, owner, ApprovalAction.REMOVE_OWNER, target_profile=second_owner)

        apply_effect(request)

        assert not Membership.objects.is_owner(second_owner.id, co_owned_company.id)

    def test_remove_owner_clears_active_context(self, co_owned_company, owner, second_owner):
        ActiveContext.objects.create(profile=second_owner, company=co_owned_company, role=Role.OWNER)
        ActiveContext.objects.create(profile=owner, company=co_owned_company, role=Role.OWNER)
        request = make_request(co_owned_company, owner, ApprovalAction.REMOVE_OWNER, target_profile=second_owner)

        diff = apply_effect(request)

        assert diff['context_cleared'] is True
        assert not ActiveContext.objects.filter(profile=second_owner).exists()
        assert ActiveContext.objects.filter(profile=owner, company=co_owned_company).exists()

    def test_remove_last_owner(self, company, owner):
        request = make_request(company, owner, ApprovalAction.REMOVE_OWNER, target_profile=owner)

        with pytest.raises(EffectError, match='last remaining owner'):
            apply_effect(request)

    def test_remove_non_owner(self, co_owned_company, owner, third_owner):
        request = make_request(co_owned_company, owner, ApprovalAction.REMOVE_OWNER, target_profile=third_owner)

        with pytest.raises(EffectError, match='no longer an owner'):
            apply_effect(request)


@pytest.mark.django_db
class TestPayChangeEffect:
    """Test employee_pay_change."""

    def test_updates_rate(self, company, owner, employee_membership):
        request = make_request(
            company, owner, ApprovalAction.EMPLOYEE_PAY_CHANGE,
            entity_id=employee_membership.id, payload={'hourly_rate': '27.50'},
        )

        diff = apply_effect(request)

        employee_membership.refresh_from_db()
        assert employee_membership.hourly_rate == Decimal('27.50')
        assert diff['hourly_rate'] == {'before': '20.00', 'after': '27.50'}

    def test_missing_membership(self, company, owner, employee_membership):
        employee_membership.delete()
        request = make_request(
            company, owner, ApprovalAction.EMPLOYEE_PAY_CHANGE,
            entity_id=employee_membership.id, payload={'hourly_rate': '27.50'},
        )

        with pytest.raises(EffectError):
            apply_effect(request)

    def test_employee_no_longer_approved(self, company, owner, employee_membership):
        employee_membership.approval_status = EmployeeApprovalStatus.PENDING
        employee_membership.save()
        request = make_request(
            company, owner, ApprovalAction.EMPLOYEE_PAY_CHANGE,
            entity_id=employee_membership.id, payload={'hourly_rate': '27.50'},
        )

        with pytest.raises(EffectError, match='no longer approved'):
            apply_effect(request)

        employee_membership.refresh_from_db()
        assert employee_membership.hourly_rate == Decimal('20.00')

    def test_invalid_rate(self, company, owner, employee_membership):
        request = make_request(
            company, owner, ApprovalAction.EMPLOYEE_PAY_CHANGE,
            entity_id=employee_membership.id, payload={'hourly_rate': 'lots'},
        )

        with pytest.raises(EffectError):
            apply_effect(request)

    def test_missing_rate(self, company, owner, employee_membership):
        request = make_request(
            company, owner, ApprovalAction.EMPLOYEE_PAY_CHANGE,
            entity_id=employee_membership.id, payload={},
        )

        with pytest.raises(EffectError):
            apply_effect(request)

    def test_unknown_action(self, company, owner):
        request = make_request(company, owner, ApprovalAction.ADD_OWNER)
        request.action = 'rename_company'

        with pytest.raises(EffectError, match='Unsupported'):
            apply_effect(request)
