"""
Company API views.
"""
import logging
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from drf_spectacular.utils import extend_schema

from apps.companies.serializers import (
    CompanySerializer, CompanyCreateSerializer, JoinCompanySerializer, OwnerSerializer,
)
from apps.companies.services import CompanyService
from apps.core.permissions import HasCompanyRole, requires_role
from apps.core.validators import validate_input
from apps.rbac.models import Role
from apps.rbac.serializers import MembershipSerializer

logger = logging.getLogger(__name__)


class CompanyListView(APIView):
    """
    GET /v1/companies
    POST /v1/companies

    List the caller's companies or create a new one with the caller as
    primary owner.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="List my companies",
        responses={200: CompanySerializer(many=True)},
        tags=['Companies']
    )
    def get(self, request):
        companies = CompanyService.list_companies(request.user)
        return Response({'companies': CompanySerializer(companies, many=True).data})

    @extend_schema(
        summary="Create company",
        request=CompanyCreateSerializer,
        responses={201: CompanySerializer},
        tags=['Companies']
    )
    def post(self, request):
        data = dict(validate_input(CompanyCreateSerializer, request.data))
        name = data.pop('name')

        company = CompanyService.create_company(request.user, name, http_request=request, **data)

        return Response(
            {'company': CompanySerializer(company).data},
            status=status.HTTP_201_CREATED
        )


class JoinCompanyView(APIView):
    """
    POST /v1/companies/join

    Join a company as an employee with its company code. The membership
    starts pending until an owner approves it.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Join company as employee",
        request=JoinCompanySerializer,
        responses={201: MembershipSerializer},
        tags=['Companies']
    )
    def post(self, request):
        data = validate_input(JoinCompanySerializer, request.data)

        membership = CompanyService.join_company(
            request.user,
            data['company_code'],
            http_request=request,
        )

        return Response(
            {
                'success': True,
                'company': {'id': membership.company_id, 'name': membership.company.name},
                'membership': MembershipSerializer(membership).data,
            },
            status=status.HTTP_201_CREATED
        )


@requires_role(Role.OWNER)
class CompanyOwnersView(APIView):
    """
    GET /v1/companies/<company_id>/owners

    List the owners of a company the caller owns.
    """

    permission_classes = [IsAuthenticated, HasCompanyRole]

    @extend_schema(
        summary="List company owners",
        responses={200: OwnerSerializer(many=True)},
        tags=['Companies']
    )
    def get(self, request, company_id):
        owners = CompanyService.list_owners(request.user, request.company_id)
        return Response({'owners': OwnerSerializer(owners, many=True).data})
