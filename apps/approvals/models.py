"""
Approval workflow models.

An ApprovalRequest captures a sensitive mutation awaiting sign-off; each
owner's vote on it is an ApprovalDecision.
"""
from django.db import models
from apps.core.models import BaseModel


class ApprovalStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'
    CANCELLED = 'cancelled', 'Cancelled'
    APPLIED = 'applied', 'Applied'
    FAILED = 'failed', 'Failed'


class ApprovalAction(models.TextChoices):
    ADD_OWNER = 'add_owner', 'Add owner'
    REMOVE_OWNER = 'remove_owner', 'Remove owner'
    EMPLOYEE_PAY_CHANGE = 'employee_pay_change', 'Employee pay change'


OWNER_ACTIONS = (ApprovalAction.ADD_OWNER, ApprovalAction.REMOVE_OWNER)


class DecisionType(models.TextChoices):
    APPROVE = 'approve', 'Approve'
    REJECT = 'reject', 'Reject'


class ApprovalRequestQuerySet(models.QuerySet):
    """Chainable ApprovalRequest filters with company scoping."""

    def for_companies(self, company_ids):
        return self.filter(company_id__in=company_ids)

    def owner_changes(self):
        return self.filter(action__in=OWNER_ACTIONS)


class ApprovalRequest(BaseModel):
    """
    A pending sensitive action awaiting multi-party sign-off.

    Status moves ``pending -> approved|rejected|cancelled`` and
    ``approved -> applied|failed``. Every move is a conditional update on the
    current status (see ApprovalService.transition).
    """

    company = models.ForeignKey(
        'companies.Company',
        on_delete=models.CASCADE,
        related_name='approval_requests',
        db_index=True,
        help_text="Company this request belongs to"
    )
    action = models.CharField(
        max_length=50,
        choices=ApprovalAction.choices,
        db_index=True,
        help_text="Kind of mutation being requested"
    )

    # Target
    target_profile = models.ForeignKey(
        'rbac.Profile',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='approval_requests_targeting',
        help_text="Profile the mutation applies to"
    )
    entity_table = models.CharField(
        max_length=50,
        blank=True,
        help_text="Table of the entity being changed"
    )
    entity_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="ID of the entity being changed"
    )
    entity_label = models.CharField(
        max_length=255,
        blank=True,
        help_text="Human readable name of the entity"
    )

    requested_by = models.ForeignKey(
        'rbac.Profile',
        on_delete=models.SET_NULL,
        null=True,
        related_name='approval_requests_created',
        help_text="Owner who created the request"
    )
    status = models.CharField(
        max_length=20,
        choices=ApprovalStatus.choices,
        default=ApprovalStatus.PENDING,
        db_index=True,
        help_text="Workflow status"
    )
    required_approvals = models.PositiveIntegerField(
        default=0,
        help_text="Approve decisions needed from owners other than the requester"
    )
    payload = models.JSONField(
        default=dict,
        blank=True,
        help_text="Data the effect is applied with"
    )
    summary = models.CharField(
        max_length=255,
        blank=True,
        help_text="Short description shown to approvers"
    )
    cooldown_hours = models.PositiveIntegerField(
        default=0,
        help_text="Hours between approval and when the effect may be applied"
    )

    # Timeline
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    effective_at = models.DateTimeField(null=True, blank=True)
    effect_attempted_at = models.DateTimeField(null=True, blank=True)
    applied_at = models.DateTimeField(null=True, blank=True)
    applied_by = models.ForeignKey(
        'rbac.Profile',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='approval_requests_applied',
        help_text="Profile whose call applied the effect"
    )
    failure_reason = models.TextField(
        blank=True,
        help_text="Why applying the effect failed"
    )

    objects = ApprovalRequestQuerySet.as_manager()

    class Meta:
        db_table = 'approval_requests'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['company', 'action', 'target_profile'],
                condition=models.Q(status='pending'),
                name='unique_pending_approval_per_target',
            ),
        ]
        indexes = [
            models.Index(fields=['company', 'status', 'created_at']),
        ]

    def __str__(self):
        return f"{self.action} ({self.status}) @ {self.company_id}"


class ApprovalDecision(BaseModel):
    """
    One owner's approve or reject vote on a request.
    """

    request = models.ForeignKey(
        ApprovalRequest,
        on_delete=models.CASCADE,
        related_name='decisions',
        help_text="Request this decision is on"
    )
    approver = models.ForeignKey(
        'rbac.Profile',
        on_delete=models.CASCADE,
        related_name='approval_decisions',
        help_text="Owner who decided"
    )
    decision = models.CharField(
        max_length=10,
        choices=DecisionType.choices,
        help_text="approve or reject"
    )
    note = models.TextField(
        blank=True,
        help_text="Optional comment from the approver"
    )

    class Meta:
        db_table = 'approval_decisions'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['request', 'approver'],
                name='unique_decision_per_approver',
            ),
        ]

    def __str__(self):
        return f"{self.approver_id} {self.decision} {self.request_id}"
