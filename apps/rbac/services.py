"""
RBAC and Authentication services.

Implements:
- MembershipResolver: companies and roles a profile holds, the active context
- AuthService: validation of auth provider JWTs
- validate_four_eyes: requester and approver must differ
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional, Dict, Any, Set, List
from django.conf import settings
from django.db import transaction
from django.utils import timezone
import jwt

from apps.core.exceptions import NotFound, Unauthorized, ValidationError
from apps.core.sentry_utils import add_breadcrumb
from apps.rbac.models import (
    Profile, Membership, ActiveContext, AuditLog, Role, EmployeeApprovalStatus
)

logger = logging.getLogger(__name__)


def parse_role(value, field='role') -> Role:
    """Parse a role string at the boundary; unknown values are a validation error."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise ValidationError(
            'Validation error',
            details={field: [f"'{value}' is not a valid role. Expected one of: {', '.join(Role.values)}."]}
        )


def parse_uuid(value, field) -> uuid.UUID:
    """Parse an identifier at the boundary."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(
            'Validation error',
            details={field: [f"'{value}' is not a valid UUID."]}
        )


def validate_four_eyes(initiator_id, approver_id):
    """
    Validate four-eyes principle: initiator and approver must be different profiles.

    Raises:
        Unauthorized: If initiator and approver are the same profile
    """
    if str(initiator_id) == str(approver_id):
        raise Unauthorized(
            'Requesters cannot decide on their own requests'
        )
    return True


class MembershipResolver:
    """
    Resolves which companies a profile belongs to and in which role.

    Every tenant-scoped operation derives its allowed company set from here.
    Nothing is cached: memberships change through the approval workflow and
    must be re-read on every request.
    """

    @classmethod
    def get_memberships(cls, profile: Profile) -> List[Dict[str, Any]]:
        """
        Return one summary per company the profile belongs to, sorted by company name.

        Each summary holds ``company_id``, ``company_name``, ``roles`` (owner
        first), ``is_primary_owner`` and ``employee_status``.
        """
        memberships = (
            Membership.objects
            .for_profile(profile)
            .select_related('company')
            .order_by('created_at')
        )

        grouped = {}
        for membership in memberships:
            entry = grouped.setdefault(membership.company_id, {
                'company_id': membership.company_id,
                'company_name': membership.company.name,
                'roles': [],
                'is_primary_owner': False,
                'employee_status': None,
            })
            entry['roles'].append(membership.role)
            if membership.role == Role.OWNER:
                entry['is_primary_owner'] = membership.is_primary_owner
            else:
                entry['employee_status'] = membership.approval_status

        for entry in grouped.values():
            entry['roles'].sort(key=lambda role: Role.values.index(role))

        return sorted(
            grouped.values(),
            key=lambda entry: (entry['company_name'].lower(), str(entry['company_id']))
        )

    @classmethod
    def company_ids(cls, profile: Profile, role=None) -> Set[uuid.UUID]:
        """Company ids the profile may act on, optionally restricted to a role."""
        qs = Membership.objects.for_profile(profile)
        if role is not None:
            qs = qs.filter(role=parse_role(role))
        return set(qs.values_list('company_id', flat=True))

    @classmethod
    def require_role(cls, profile: Profile, company_id, role) -> Membership:
        """
        Return the (profile, company, role) membership.

        Raises:
            Unauthorized: If the membership does not exist
        """
        role = parse_role(role)
        company_id = parse_uuid(company_id, 'company_id')

        membership = Membership.objects.filter(
            profile=profile,
            company_id=company_id,
            role=role,
        ).first()

        if membership is None:
            raise Unauthorized(f'Unauthorized: not a company {role.value}')
        return membership

    @classmethod
    def resolve_company(cls, profile: Profile, requested_company_id=None, role=Role.OWNER) -> uuid.UUID:
        """
        Resolve the company an operation acts on.

        The requested company must be in the profile's allowed set for the
        role. When none is requested the active-context company is used if the
        profile holds the role there, otherwise the profile's oldest
        membership with that role.

        Raises:
            NotFound: If the profile has no membership at all
            Unauthorized: If the requested company is outside the allowed set
            ValidationError: If the role or company id is malformed
        """
        role = parse_role(role)

        if not Membership.objects.filter(profile=profile).exists():
            raise NotFound('No company found')

        allowed = cls.company_ids(profile, role)

        if requested_company_id:
            company_id = parse_uuid(requested_company_id, 'company_id')
            if company_id not in allowed:
                raise Unauthorized('Unauthorized company access')
            return company_id

        if not allowed:
            raise Unauthorized(f'Unauthorized: no company where this profile is {role.value}')

        context = cls.get_active_context(profile)
        if context is not None and context.company_id in allowed:
            return context.company_id

        return (
            Membership.objects
            .filter(profile=profile, role=role)
            .order_by('created_at')
            .values_list('company_id', flat=True)
            .first()
        )

    @classmethod
    def get_active_context(cls, profile: Profile) -> Optional[ActiveContext]:
        """
        Return the profile's active context.

        A stored context is returned while it is still backed by a membership.
        Otherwise a default is picked (primary-owner company, then any owner
        company, then an approved employee company, then the first
        membership) and stored. Returns None when the profile has no
        memberships.
        """
        memberships = list(
            Membership.objects
            .for_profile(profile)
            .order_by('created_at')
        )
        if not memberships:
            return None

        stored = (
            ActiveContext.objects
            .filter(profile=profile)
            .select_related('company')
            .first()
        )
        if stored is not None and any(
            m.company_id == stored.company_id and m.role == stored.role
            for m in memberships
        ):
            return stored

        default = cls._pick_default(memberships)
        context, _ = ActiveContext.objects.update_or_create(
            profile=profile,
            defaults={'company_id': default.company_id, 'role': default.role},
        )

        logger.info(
            "Active context defaulted",
            extra={
                'profile_id': str(profile.id),
                'company_id': str(default.company_id),
                'role': default.role,
                'replaced_stale': stored is not None,
            }
        )
        return context

    @staticmethod
    def _pick_default(memberships: List[Membership]) -> Membership:
        owners = [m for m in memberships if m.role == Role.OWNER]
        for membership in owners:
            if membership.is_primary_owner:
                return membership
        if owners:
            return owners[0]
        for membership in memberships:
            if membership.approval_status == EmployeeApprovalStatus.APPROVED:
                return membership
        return memberships[0]

    @classmethod
    @transaction.atomic
    def set_active_context(cls, profile: Profile, company_id, role=None, request=None) -> ActiveContext:
        """
        Switch the profile's active context to (company, role).

        When role is omitted it defaults to owner if held, else employee.

        Raises:
            Unauthorized: If the (profile, company, role) membership does not exist
            ValidationError: If the role or company id is malformed
        """
        company_id = parse_uuid(company_id, 'company_id')
        if role is not None:
            role = parse_role(role)

        held = set(
            Membership.objects
            .filter(profile=profile, company_id=company_id)
            .values_list('role', flat=True)
        )

        if role is None:
            if Role.OWNER in held:
                role = Role.OWNER
            elif Role.EMPLOYEE in held:
                role = Role.EMPLOYEE

        if role is None or role not in held:
            logger.warning(
                "Active context switch denied",
                extra={
                    'profile_id': str(profile.id),
                    'company_id': str(company_id),
                    'role': role.value if role else None,
                }
            )
            raise Unauthorized('Unauthorized: no membership for this company and role')

        previous = ActiveContext.objects.filter(profile=profile).first()
        before = (
            {'company_id': str(previous.company_id), 'role': previous.role}
            if previous else None
        )

        context, _ = ActiveContext.objects.update_or_create(
            profile=profile,
            defaults={'company_id': company_id, 'role': role.value},
        )

        AuditLog.log_action(
            action='context.switched',
            actor=profile,
            company=company_id,
            target_type='ActiveContext',
            target_id=context.id,
            diff={
                'before': before,
                'after': {'company_id': str(company_id), 'role': role.value},
            },
            request=request,
        )
        add_breadcrumb('context', 'Active context switched', data={'role': role.value})

        return context


class AuthService:
    """
    Service for validating tokens issued by the hosted auth provider.
    """

    @classmethod
    def generate_jwt(cls, profile: Profile, expires_in: Optional[timedelta] = None) -> str:
        """
        Generate a JWT for a profile, in the shape the auth provider issues.

        Used by local tooling and the test suite; production tokens come
        from the provider.
        """
        now = timezone.now()
        expires_in = expires_in or timedelta(hours=getattr(settings, 'JWT_EXPIRATION_HOURS', 1))
        payload = {
            'sub': str(profile.id),
            'email': profile.email,
            'role': 'authenticated',
            'iat': now,
            'exp': now + expires_in,
        }
        audience = getattr(settings, 'JWT_AUDIENCE', None)
        if audience:
            payload['aud'] = audience

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def validate_jwt(cls, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate JWT token and return payload.

        Returns:
            Decoded payload dict or None if invalid
        """
        audience = getattr(settings, 'JWT_AUDIENCE', None)
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')],
                audience=audience or None,
                options={'verify_aud': bool(audience)},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Expired JWT presented")
            return None
        except jwt.InvalidTokenError as e:
            logger.info("Invalid JWT presented", extra={'reason': str(e)})
            return None

    @classmethod
    def get_profile_from_jwt(cls, token: str) -> Optional[Profile]:
        """
        Return the active profile a token belongs to.

        The ``sub`` claim (or ``user_id``) is the profile id.
        """
        payload = cls.validate_jwt(token)
        if not payload:
            return None

        raw_id = payload.get('sub') or payload.get('user_id')
        try:
            profile_id = uuid.UUID(str(raw_id))
        except (TypeError, ValueError):
            logger.info("JWT subject is not a profile id")
            return None

        profile = Profile.objects.get_or_create_from_claims(profile_id, payload)
        if profile is None or not profile.is_active:
            return None
        return profile
