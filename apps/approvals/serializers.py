"""
Approval workflow serializers for REST API endpoints.
"""
from rest_framework import serializers
from apps.approvals.models import (
    ApprovalRequest, ApprovalDecision, ApprovalAction, ApprovalStatus, OWNER_ACTIONS,
)
from apps.rbac.serializers import ProfileSummarySerializer


class ApprovalDecisionSerializer(serializers.ModelSerializer):
    """Serializer for ApprovalDecision model."""

    approver = ProfileSummarySerializer(read_only=True)

    class Meta:
        model = ApprovalDecision
        fields = ['id', 'approver', 'decision', 'note', 'created_at']
        read_only_fields = fields


class ApprovalRequestSerializer(serializers.ModelSerializer):
    """Serializer for ApprovalRequest model, decisions included."""

    requested_by = ProfileSummarySerializer(read_only=True)
    target_profile = ProfileSummarySerializer(read_only=True)
    decisions = ApprovalDecisionSerializer(many=True, read_only=True)

    class Meta:
        model = ApprovalRequest
        fields = [
            'id', 'company_id', 'action', 'status',
            'target_profile', 'entity_table', 'entity_id', 'entity_label',
            'requested_by', 'required_approvals', 'payload', 'summary',
            'cooldown_hours', 'created_at', 'updated_at', 'approved_at',
            'rejected_at', 'cancelled_at', 'effective_at', 'applied_at',
            'applied_by_id', 'failure_reason', 'decisions'
        ]
        read_only_fields = fields


class ApprovalListQuerySerializer(serializers.Serializer):
    """Query parameters accepted by approval listings."""

    status = serializers.ChoiceField(choices=ApprovalStatus.choices, required=False)
    company_id = serializers.UUIDField(required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)


class ApprovalCreateSerializer(serializers.Serializer):
    """Input for creating an approval request."""

    company_id = serializers.UUIDField(required=False)
    action = serializers.ChoiceField(choices=ApprovalAction.choices)
    target_profile_id = serializers.UUIDField(required=False)
    target_email = serializers.EmailField(required=False)
    entity_id = serializers.UUIDField(
        required=False,
        help_text="Employee membership id for pay changes"
    )
    hourly_rate = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=0,
        required=False,
        allow_null=True
    )

    def validate(self, attrs):
        action = attrs['action']
        if action in OWNER_ACTIONS:
            if not attrs.get('target_profile_id') and not attrs.get('target_email'):
                raise serializers.ValidationError({
                    'target_profile_id': ['Either target_profile_id or target_email is required.']
                })
        elif action == ApprovalAction.EMPLOYEE_PAY_CHANGE:
            errors = {}
            if not attrs.get('entity_id'):
                errors['entity_id'] = ['Employee membership id is required.']
            if 'hourly_rate' not in attrs:
                errors['hourly_rate'] = ['This field is required.']
            if errors:
                raise serializers.ValidationError(errors)
        return attrs


class OwnerRequestCreateSerializer(ApprovalCreateSerializer):
    """Input for creating an owner change request."""

    action = serializers.ChoiceField(choices=[
        (ApprovalAction.ADD_OWNER.value, ApprovalAction.ADD_OWNER.label),
        (ApprovalAction.REMOVE_OWNER.value, ApprovalAction.REMOVE_OWNER.label),
    ])
    entity_id = None
    hourly_rate = None


class DecisionSerializer(serializers.Serializer):
    """Input for approve and reject."""

    note = serializers.CharField(required=False, allow_blank=True, max_length=1000, default='')
