"""
RBAC API views: active company context and audit trail.
"""
import logging
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from drf_spectacular.utils import extend_schema, OpenApiParameter

from apps.core.permissions import HasCompanyRole, requires_role
from apps.core.validators import validate_input
from apps.rbac.models import AuditLog, Role
from apps.rbac.serializers import (
    ActiveContextSerializer, AuditLogQuerySerializer, AuditLogSerializer,
    MembershipSummarySerializer, SetActiveContextSerializer,
)
from apps.rbac.services import MembershipResolver

logger = logging.getLogger(__name__)


class CompanyContextView(APIView):
    """
    GET /v1/company-context
    POST /v1/company-context

    Read the profile's memberships and active context, or switch the
    active context to another (company, role) the profile holds.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Get memberships and active context",
        responses={200: {
            'type': 'object',
            'properties': {
                'memberships': {'type': 'array', 'items': {'type': 'object'}},
                'context': {'type': 'object', 'nullable': True},
            }
        }},
        tags=['Company context']
    )
    def get(self, request):
        memberships = MembershipResolver.get_memberships(request.user)
        context = MembershipResolver.get_active_context(request.user)

        return Response({
            'memberships': MembershipSummarySerializer(memberships, many=True).data,
            'context': ActiveContextSerializer(context).data if context else None,
        })

    @extend_schema(
        summary="Switch active context",
        request=SetActiveContextSerializer,
        responses={200: ActiveContextSerializer},
        tags=['Company context']
    )
    def post(self, request):
        data = validate_input(SetActiveContextSerializer, request.data)

        context = MembershipResolver.set_active_context(
            request.user,
            data['company_id'],
            role=data.get('role'),
            request=request,
        )

        logger.info(
            "Active context switched",
            extra={
                'profile_id': str(request.user.id),
                'company_id': str(context.company_id),
                'role': context.role,
            }
        )
        return Response({'context': ActiveContextSerializer(context).data})


@requires_role(Role.OWNER)
class AuditLogListView(APIView):
    """
    GET /v1/audit-logs

    List audit logs of a company the caller owns. Supports filtering by
    actor, action, target type and date range.
    """

    permission_classes = [IsAuthenticated, HasCompanyRole]

    @extend_schema(
        summary="List audit logs",
        parameters=[
            OpenApiParameter('company_id', str, description='Company (defaults to the active context)'),
            OpenApiParameter('actor_id', str, description='Filter by actor profile'),
            OpenApiParameter('action', str, description='Filter by action'),
            OpenApiParameter('target_type', str, description='Filter by target type'),
            OpenApiParameter('from', str, description='Created at or after (ISO 8601)'),
            OpenApiParameter('to', str, description='Created at or before (ISO 8601)'),
            OpenApiParameter('limit', int, description='Page size, 1-200 (default 50)'),
            OpenApiParameter('offset', int, description='Rows to skip'),
        ],
        responses={200: AuditLogSerializer(many=True)},
        tags=['Audit']
    )
    def get(self, request):
        query = validate_input(AuditLogQuerySerializer, request.query_params)

        logs = AuditLog.objects.for_company(request.company_id).select_related('actor')

        if query.get('actor_id'):
            logs = logs.filter(actor_id=query['actor_id'])
        if query.get('action'):
            logs = logs.by_action(query['action'])
        if query.get('target_type'):
            logs = logs.by_target(query['target_type'])
        if query.get('from'):
            logs = logs.filter(created_at__gte=query['from'])
        if query.get('to'):
            logs = logs.filter(created_at__lte=query['to'])

        total = logs.count()
        offset, limit = query['offset'], query['limit']
        page = logs.order_by('-created_at')[offset:offset + limit]

        return Response({
            'logs': AuditLogSerializer(page, many=True).data,
            'total': total,
        })
