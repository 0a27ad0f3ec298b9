"""
Company services: creation, employee join, listings.
"""
import logging
from typing import List
from django.db import transaction, IntegrityError

from apps.companies.models import Company, generate_company_code
from apps.core.exceptions import Conflict, NotFound
from apps.rbac.models import AuditLog, Membership, Profile, Role, EmployeeApprovalStatus
from apps.rbac.services import MembershipResolver

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


class CompanyService:
    """
    Service for company lifecycle operations.
    """

    @classmethod
    def create_company(cls, profile: Profile, name: str, http_request=None, **details) -> Company:
        """
        Create a company with the profile as its primary owner.

        The profile's active context switches to the new company as owner.
        """
        company = None
        for _ in range(MAX_CODE_ATTEMPTS):
            try:
                with transaction.atomic():
                    company = Company.objects.create(
                        name=name,
                        company_code=generate_company_code(),
                        created_by=profile,
                        **details
                    )
                    Membership.objects.create(
                        profile=profile,
                        company=company,
                        role=Role.OWNER,
                        is_primary_owner=True,
                    )
                break
            except IntegrityError:
                logger.warning(
                    "Company code collision, retrying",
                    extra={'profile_id': str(profile.id)}
                )
        if company is None:
            raise Conflict('Could not allocate a unique company code')

        logger.info(
            "Company created",
            extra={'company_id': str(company.id), 'profile_id': str(profile.id)}
        )
        AuditLog.log_action(
            action='company.created',
            actor=profile,
            company=company,
            target_type='Company',
            target_id=company.id,
            diff={'name': name},
            request=http_request,
        )

        MembershipResolver.set_active_context(profile, company.id, Role.OWNER, request=http_request)
        return company

    @classmethod
    def join_company(cls, profile: Profile, company_code: str, http_request=None) -> Membership:
        """
        Join a company as an employee awaiting owner approval.

        Raises:
            NotFound: If no company has the code
            Conflict: If the profile is already an employee there
        """
        company = Company.objects.by_code(company_code)
        if company is None:
            raise NotFound('Invalid company code')

        try:
            with transaction.atomic():
                membership = Membership.objects.create(
                    profile=profile,
                    company=company,
                    role=Role.EMPLOYEE,
                    approval_status=EmployeeApprovalStatus.PENDING,
                )
        except IntegrityError:
            raise Conflict('You are already a member of this company')

        logger.info(
            "Profile joined company as employee",
            extra={'company_id': str(company.id), 'profile_id': str(profile.id)}
        )
        AuditLog.log_action(
            action='membership.employee_joined',
            actor=profile,
            company=company,
            target_type='Membership',
            target_id=membership.id,
            request=http_request,
        )
        return membership

    @staticmethod
    def list_companies(profile: Profile) -> List[Company]:
        """Companies the profile holds any membership in, by name."""
        return list(Company.objects.for_profile(profile))

    @staticmethod
    def list_owners(profile: Profile, company_id) -> List[Membership]:
        """Owner memberships of a company the profile owns, oldest first."""
        MembershipResolver.require_role(profile, company_id, Role.OWNER)
        return list(Membership.objects.owners(company_id).select_related('profile'))
