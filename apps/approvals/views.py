"""
Approval workflow API views.

Listing and creation are scoped to a company the caller owns (resolved by
HasCompanyRole). Decisions and follow-up actions locate the request first
and check ownership of its company in ApprovalService.
"""
import logging
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from drf_spectacular.utils import extend_schema, OpenApiParameter

from apps.approvals.models import ApprovalStatus
from apps.approvals.serializers import (
    ApprovalRequestSerializer, ApprovalListQuerySerializer, ApprovalCreateSerializer,
    OwnerRequestCreateSerializer, DecisionSerializer,
)
from apps.approvals.services import ApprovalService
from apps.core.permissions import HasCompanyRole, requires_role
from apps.core.validators import validate_input
from apps.rbac.models import Role

logger = logging.getLogger(__name__)

LIST_PARAMETERS = [
    OpenApiParameter('status', str, enum=ApprovalStatus.values, description='Exact status filter'),
    OpenApiParameter('company_id', str, description='Company (defaults to the active context)'),
    OpenApiParameter('limit', int, description='Page size, 1-200 (default 50)'),
    OpenApiParameter('offset', int, description='Rows to skip'),
]


def _create_kwargs(data):
    kwargs = {
        'target_profile_id': data.get('target_profile_id'),
        'target_email': data.get('target_email'),
        'entity_id': data.get('entity_id'),
    }
    if 'hourly_rate' in data:
        kwargs['payload'] = {'hourly_rate': data['hourly_rate']}
    return kwargs


@requires_role(Role.OWNER)
class ApprovalListView(APIView):
    """
    GET /v1/approvals
    POST /v1/approvals

    List approval requests of a company the caller owns, or create one.
    """

    permission_classes = [IsAuthenticated, HasCompanyRole]

    @extend_schema(
        summary="List approval requests",
        parameters=LIST_PARAMETERS,
        responses={200: ApprovalRequestSerializer(many=True)},
        tags=['Approvals']
    )
    def get(self, request):
        query = validate_input(ApprovalListQuerySerializer, request.query_params)

        approvals, total = ApprovalService.list_requests(
            request.user,
            company_id=request.company_id,
            status=query.get('status'),
            limit=query['limit'],
            offset=query['offset'],
        )

        return Response({
            'approvals': ApprovalRequestSerializer(approvals, many=True).data,
            'count': total,
        })

    @extend_schema(
        summary="Create approval request",
        request=ApprovalCreateSerializer,
        responses={201: ApprovalRequestSerializer},
        tags=['Approvals']
    )
    def post(self, request):
        data = validate_input(ApprovalCreateSerializer, request.data)

        approval = ApprovalService.create_request(
            request.user,
            request.company_id,
            data['action'],
            http_request=request,
            **_create_kwargs(data)
        )

        if approval is None:
            return Response({'approval': None, 'applied': False})

        return Response(
            {
                'approval': ApprovalRequestSerializer(approval).data,
                'applied': approval.status == ApprovalStatus.APPLIED,
            },
            status=status.HTTP_201_CREATED
        )


class ApprovalDecisionView(APIView):
    """Base view for POST /v1/approvals/<id>/<operation>."""

    permission_classes = [IsAuthenticated]
    operation = None

    def perform(self, request, approval_id):
        raise NotImplementedError

    @extend_schema(
        request=DecisionSerializer,
        responses={200: ApprovalRequestSerializer},
        tags=['Approvals']
    )
    def post(self, request, approval_id):
        approval = self.perform(request, approval_id)

        logger.info(
            f"Approval request {self.operation} call handled",
            extra={
                'approval_id': str(approval.id),
                'status': approval.status,
            }
        )
        return Response({'approval': ApprovalRequestSerializer(approval).data})


class ApprovalApproveView(ApprovalDecisionView):
    """
    POST /v1/approvals/<id>/approve

    Record the caller's approval. The requester cannot approve their own
    request.
    """

    operation = 'approve'

    def perform(self, request, approval_id):
        data = validate_input(DecisionSerializer, request.data)
        return ApprovalService.approve(
            request.user, approval_id, note=data['note'], http_request=request
        )


class ApprovalRejectView(ApprovalDecisionView):
    """
    POST /v1/approvals/<id>/reject

    Record the caller's rejection; the request is rejected at once.
    """

    operation = 'reject'

    def perform(self, request, approval_id):
        data = validate_input(DecisionSerializer, request.data)
        return ApprovalService.reject(
            request.user, approval_id, note=data['note'], http_request=request
        )


class ApprovalCancelView(ApprovalDecisionView):
    """
    POST /v1/approvals/<id>/cancel

    Withdraw a pending request (requester only).
    """

    operation = 'cancel'

    def perform(self, request, approval_id):
        return ApprovalService.cancel(request.user, approval_id, http_request=request)


class ApprovalApplyView(ApprovalDecisionView):
    """
    POST /v1/approvals/<id>/apply

    Apply an approved request whose cooldown has elapsed. A failed effect
    is reported with status ``failed`` and a ``failure_reason``.
    """

    operation = 'apply'

    def perform(self, request, approval_id):
        return ApprovalService.apply(request.user, approval_id, http_request=request)


@requires_role(Role.OWNER)
class OwnerRequestListView(APIView):
    """
    GET /v1/owners/requests
    POST /v1/owners/requests

    Owner change requests (add or remove an owner) of a company the caller
    owns. The target is given by profile id or email.
    """

    permission_classes = [IsAuthenticated, HasCompanyRole]

    @extend_schema(
        summary="List owner change requests",
        parameters=LIST_PARAMETERS,
        responses={200: ApprovalRequestSerializer(many=True)},
        tags=['Owners']
    )
    def get(self, request):
        query = validate_input(ApprovalListQuerySerializer, request.query_params)

        requests, total = ApprovalService.list_requests(
            request.user,
            company_id=request.company_id,
            status=query.get('status'),
            owner_changes=True,
            limit=query['limit'],
            offset=query['offset'],
        )

        return Response({
            'requests': ApprovalRequestSerializer(requests, many=True).data,
            'count': total,
        })

    @extend_schema(
        summary="Create owner change request",
        request=OwnerRequestCreateSerializer,
        responses={201: ApprovalRequestSerializer},
        tags=['Owners']
    )
    def post(self, request):
        data = validate_input(OwnerRequestCreateSerializer, request.data)

        owner_request = ApprovalService.create_request(
            request.user,
            request.company_id,
            data['action'],
            http_request=request,
            **_create_kwargs(data)
        )

        return Response(
            {'request': ApprovalRequestSerializer(owner_request).data},
            status=status.HTTP_201_CREATED
        )
