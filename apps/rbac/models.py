"""
RBAC models for multi-company access control.

Implements:
- Profile: global identity, id matches the hosted auth provider's user id
- Membership: (profile, company, role) with role in {owner, employee}
- ActiveContext: the (company, role) pair a profile is currently acting as
- AuditLog: audit trail for sensitive operations
"""
import logging
from django.db import models, transaction, DatabaseError
from apps.core.models import BaseModel

logger = logging.getLogger(__name__)


class Role(models.TextChoices):
    """Closed set of membership roles."""
    OWNER = 'owner', 'Owner'
    EMPLOYEE = 'employee', 'Employee'


class EmployeeApprovalStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'


class ProfileManager(models.Manager):
    """
    Manager for Profile queries.

    Compatible with Django's authentication system.
    """

    def by_email(self, email):
        """Find profile by email."""
        return self.filter(email=self.normalize_email(email)).first()

    def create_user(self, email, **extra_fields):
        """Create a new profile. Credentials live with the auth provider."""
        if not email:
            raise ValueError('Email address is required')

        extra_fields.setdefault('is_active', True)
        profile = self.model(email=self.normalize_email(email), **extra_fields)
        profile.save(using=self._db)
        return profile

    def get_or_create_from_claims(self, profile_id, claims):
        """
        Return the profile for an auth provider user id, creating it on first sight.

        The provider owns sign-up; a profile row is provisioned the first time
        a valid token for a new user reaches the API. Returns None when the
        profile is unknown and the claims carry no email to create it from.
        """
        profile = self.filter(id=profile_id).first()
        if profile is not None:
            return profile

        email = claims.get('email')
        if not email:
            return None

        metadata = claims.get('user_metadata') or {}
        profile, created = self.get_or_create(
            id=profile_id,
            defaults={
                'email': self.normalize_email(email),
                'full_name': claims.get('name') or metadata.get('full_name', ''),
            }
        )
        if created:
            logger.info(
                "Provisioned profile from auth provider claims",
                extra={'profile_id': str(profile.id)}
            )
        return profile

    @staticmethod
    def normalize_email(email):
        """
        Normalize the email address by lowercasing the domain part.
        """
        email = (email or '').strip()
        try:
            email_name, domain_part = email.rsplit('@', 1)
        except ValueError:
            return email
        return email_name + '@' + domain_part.lower()

    def get_by_natural_key(self, email):
        return self.get(**{self.model.USERNAME_FIELD: email})


class Profile(BaseModel):
    """
    Global identity - can belong to multiple companies in several roles.

    Authentication happens at the auth provider, authorization at the
    Membership level.

    This is the AUTH_USER_MODEL for the entire application.
    """

    email = models.EmailField(
        unique=True,
        db_index=True,
        help_text="Profile email address (unique globally)"
    )
    full_name = models.CharField(
        max_length=200,
        blank=True,
        help_text="Display name"
    )
    phone = models.CharField(
        max_length=32,
        blank=True,
        help_text="Contact phone number"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether the profile may use the API"
    )

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = ProfileManager()

    class Meta:
        db_table = 'profiles'
        ordering = ['-created_at']

    def __str__(self):
        return self.email

    def get_full_name(self):
        """Return full name or email if name not set."""
        return self.full_name or self.email

    @property
    def is_authenticated(self):
        """Always True for Profile instances (Django auth compatibility)."""
        return True

    @property
    def is_anonymous(self):
        """Always False for Profile instances (Django auth compatibility)."""
        return False

    def natural_key(self):
        return (self.email,)


class MembershipManager(models.Manager):
    """Manager for Membership queries."""

    def for_profile(self, profile):
        return self.filter(profile=profile)

    def owners(self, company_id):
        """Owner memberships of a company, oldest first."""
        return self.filter(company_id=company_id, role=Role.OWNER).order_by('created_at')

    def owner_count(self, company_id):
        return self.filter(company_id=company_id, role=Role.OWNER).count()

    def is_owner(self, profile_id, company_id):
        return self.filter(
            profile_id=profile_id,
            company_id=company_id,
            role=Role.OWNER
        ).exists()


class Membership(BaseModel):
    """
    Link granting a profile a role within a company.

    A profile may hold both roles in the same company. Owners carry
    ``is_primary_owner``; employees carry ``approval_status`` and an
    optional ``hourly_rate``.
    """

    profile = models.ForeignKey(
        Profile,
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="Profile holding the role"
    )
    company = models.ForeignKey(
        'companies.Company',
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="Company the role applies to"
    )
    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        db_index=True,
        help_text="Membership role"
    )
    is_primary_owner = models.BooleanField(
        default=False,
        help_text="Whether this owner created the company"
    )
    approval_status = models.CharField(
        max_length=20,
        choices=EmployeeApprovalStatus.choices,
        default=EmployeeApprovalStatus.APPROVED,
        db_index=True,
        help_text="Employee approval status (owners are always approved)"
    )
    hourly_rate = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Employee hourly pay rate"
    )

    objects = MembershipManager()

    class Meta:
        db_table = 'memberships'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['profile', 'company', 'role'],
                name='unique_membership_role',
            ),
        ]
        indexes = [
            models.Index(fields=['profile', 'role']),
            models.Index(fields=['company', 'role']),
        ]

    def __str__(self):
        return f"{self.profile_id} @ {self.company_id} ({self.role})"


class ActiveContext(BaseModel):
    """
    The (company, role) pair a profile is acting as.

    One row per profile, upserted on every switch. No history is kept.
    """

    profile = models.OneToOneField(
        Profile,
        on_delete=models.CASCADE,
        related_name='active_context',
        help_text="Profile this context belongs to"
    )
    company = models.ForeignKey(
        'companies.Company',
        on_delete=models.CASCADE,
        related_name='+',
        help_text="Company the profile is acting in"
    )
    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        help_text="Role the profile is acting as"
    )

    class Meta:
        db_table = 'active_contexts'

    def __str__(self):
        return f"{self.profile_id} -> {self.company_id} ({self.role})"


class AuditLogQuerySet(models.QuerySet):
    """Chainable AuditLog filters with company scoping."""

    def for_company(self, company_id):
        """Get audit logs for a specific company."""
        return self.filter(company_id=company_id)

    def by_action(self, action):
        return self.filter(action=action)

    def by_target(self, target_type, target_id=None):
        """Get audit logs for a target type and optionally a target id."""
        qs = self.filter(target_type=target_type)
        if target_id:
            qs = qs.filter(target_id=target_id)
        return qs


class AuditLog(BaseModel):
    """
    Audit trail for membership changes and approval workflow transitions.
    """

    company = models.ForeignKey(
        'companies.Company',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='audit_logs',
        db_index=True,
        help_text="Company this action belongs to"
    )
    actor = models.ForeignKey(
        Profile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_logs',
        db_index=True,
        help_text="Profile who performed the action (null for system actions)"
    )

    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action performed (e.g., 'approval_request.approved', 'context.switched')"
    )
    target_type = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Type of target entity (e.g., 'ApprovalRequest', 'Membership')"
    )
    target_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="ID of target entity"
    )

    diff = models.JSONField(
        default=dict,
        blank=True,
        help_text="Before/after changes in JSON format"
    )

    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="IP address of the request"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="User agent string"
    )
    request_id = models.CharField(
        max_length=64,
        blank=True,
        db_index=True,
        help_text="Request ID for tracing"
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional context metadata"
    )

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['company', 'created_at']),
            models.Index(fields=['actor', 'created_at']),
            models.Index(fields=['target_type', 'target_id']),
        ]

    def __str__(self):
        return f"{self.company_id} - {self.actor_id or 'system'} - {self.action}"

    @classmethod
    def log_action(cls, action, actor=None, company=None, target_type='',
                   target_id=None, diff=None, metadata=None, request=None):
        """
        Convenience method to create audit log entry.

        Args:
            action: Action being performed
            actor: Profile performing the action
            company: Company instance or id
            target_type: Type of target entity
            target_id: ID of target entity
            diff: Before/after changes
            metadata: Additional context
            request: Request object (for IP, user agent, request ID)

        Returns:
            AuditLog instance, or None when the entry could not be written
        """
        if actor is not None and not actor.is_authenticated:
            actor = None

        log_data = {
            'action': action,
            'actor': actor,
            'target_type': target_type,
            'target_id': target_id,
            'diff': diff or {},
            'metadata': metadata or {},
        }
        if isinstance(company, models.Model):
            log_data['company'] = company
        else:
            log_data['company_id'] = company

        if request is not None:
            log_data['ip_address'] = cls._get_client_ip(request)
            log_data['user_agent'] = request.META.get('HTTP_USER_AGENT', '')
            log_data['request_id'] = getattr(request, 'request_id', None) or ''

        try:
            # Savepoint so a failed write leaves the caller's transaction usable
            with transaction.atomic():
                return cls.objects.create(**log_data)
        except DatabaseError as e:
            logger.error(
                f"Failed to create audit log: {e}",
                extra={
                    'action': action,
                    'target_type': target_type,
                    'target_id': str(target_id) if target_id else None,
                },
                exc_info=True
            )
            return None

    @staticmethod
    def _get_client_ip(request):
        """Extract client IP from request."""
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR')
