"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Profiles and membership summaries
- Active context read and switch
- Audit logs
"""
from rest_framework import serializers
from apps.rbac.models import Profile, Membership, ActiveContext, AuditLog, Role


class ProfileSummarySerializer(serializers.ModelSerializer):
    """Public fields of a profile shown to other members of a company."""

    class Meta:
        model = Profile
        fields = ['id', 'email', 'full_name']
        read_only_fields = fields


class MembershipSummarySerializer(serializers.Serializer):
    """Per-company summary produced by MembershipResolver.get_memberships."""

    company_id = serializers.UUIDField()
    company_name = serializers.CharField()
    roles = serializers.ListField(child=serializers.CharField())
    is_primary_owner = serializers.BooleanField()
    employee_status = serializers.CharField(allow_null=True)


class MembershipSerializer(serializers.ModelSerializer):
    """Serializer for Membership model."""

    profile = ProfileSummarySerializer(read_only=True)

    class Meta:
        model = Membership
        fields = [
            'id', 'company_id', 'profile', 'role', 'is_primary_owner',
            'approval_status', 'hourly_rate', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class ActiveContextSerializer(serializers.ModelSerializer):
    """Serializer for the active (company, role) pair."""

    company_id = serializers.UUIDField(read_only=True)
    company_name = serializers.CharField(source='company.name', read_only=True)

    class Meta:
        model = ActiveContext
        fields = ['company_id', 'company_name', 'role', 'updated_at']
        read_only_fields = fields


class SetActiveContextSerializer(serializers.Serializer):
    """Input for switching the active context."""

    company_id = serializers.UUIDField(required=True)
    role = serializers.ChoiceField(
        choices=Role.choices,
        required=False,
        allow_null=True,
        help_text="Defaults to owner when held, else employee"
    )


class AuditLogSerializer(serializers.ModelSerializer):
    """Serializer for AuditLog model."""

    actor_email = serializers.EmailField(source='actor.email', read_only=True, default=None)

    class Meta:
        model = AuditLog
        fields = [
            'id', 'company_id', 'actor_id', 'actor_email', 'action',
            'target_type', 'target_id', 'diff', 'metadata',
            'ip_address', 'user_agent', 'request_id',
            'created_at'
        ]
        read_only_fields = fields


class AuditLogQuerySerializer(serializers.Serializer):
    """Query parameters accepted by the audit log listing."""

    company_id = serializers.UUIDField(required=False)
    actor_id = serializers.UUIDField(required=False)
    action = serializers.CharField(required=False, max_length=100)
    target_type = serializers.CharField(required=False, max_length=50)
    to = serializers.DateTimeField(required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)

    def get_fields(self):
        # ``from`` is a Python keyword and cannot be declared as an attribute
        fields = super().get_fields()
        fields['from'] = serializers.DateTimeField(required=False)
        return fields

    def validate(self, attrs):
        start, end = attrs.get('from'), attrs.get('to')
        if start and end and start > end:
            raise serializers.ValidationError({'from': ["'from' must not be after 'to'."]})
        return attrs

