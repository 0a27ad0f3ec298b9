"""
Company serializers for REST API endpoints.
"""
from rest_framework import serializers
from apps.companies.models import Company
from apps.rbac.serializers import MembershipSerializer


class CompanySerializer(serializers.ModelSerializer):
    """Serializer for Company model."""

    class Meta:
        model = Company
        fields = [
            'id', 'name', 'company_code', 'email', 'phone', 'website',
            'address', 'address_line_2', 'city', 'state', 'zipcode', 'country',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['id', 'company_code', 'created_at', 'updated_at']


class CompanyCreateSerializer(serializers.Serializer):
    """Input for creating a company."""

    name = serializers.CharField(max_length=255)
    email = serializers.EmailField(required=False, allow_blank=True)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=32)
    website = serializers.URLField(required=False, allow_blank=True)
    address = serializers.CharField(required=False, allow_blank=True, max_length=255)
    address_line_2 = serializers.CharField(required=False, allow_blank=True, max_length=255)
    city = serializers.CharField(required=False, allow_blank=True, max_length=100)
    state = serializers.CharField(required=False, allow_blank=True, max_length=100)
    zipcode = serializers.CharField(required=False, allow_blank=True, max_length=20)
    country = serializers.CharField(required=False, allow_blank=True, max_length=100)

    def validate_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("Company name cannot be empty.")
        return value.strip()


class JoinCompanySerializer(serializers.Serializer):
    """Input for joining a company as an employee."""

    company_code = serializers.CharField(min_length=1, max_length=16)

    def validate_company_code(self, value):
        return value.strip().upper()


class OwnerSerializer(MembershipSerializer):
    """Owner membership with the owner's profile."""

    class Meta(MembershipSerializer.Meta):
        fields = ['id', 'company_id', 'profile', 'is_primary_owner', 'created_at']
        read_only_fields = fields
