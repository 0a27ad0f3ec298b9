"""
DRF permission classes and decorators for company role enforcement.

This module provides:
- HasCompanyRole: DRF permission class that resolves the company a request
  acts on and requires a membership role in it
- @requires_role: Decorator to declare the required role on views
"""
import logging
from functools import wraps
from rest_framework.permissions import BasePermission

from apps.core.exceptions import Unauthorized
from apps.core.logging import SecurityLogger
from apps.core.middleware import set_log_company
from apps.core.sentry_utils import set_company_context

logger = logging.getLogger(__name__)


def get_client_ip(request):
    """Return the client IP, honouring X-Forwarded-For behind a proxy."""
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


class HasCompanyRole(BasePermission):
    """
    DRF permission class that enforces a membership role on API endpoints.

    The company comes from the ``company_id`` URL kwarg, query parameter or
    body field, in that order; when none is given the resolver falls back to
    the profile's active context. The allowed company set is always derived
    from the profile's memberships, never from the client.

    On success ``request.company_id`` holds the resolved company.

    Usage in views:
        class OwnerListView(APIView):
            permission_classes = [IsAuthenticated, HasCompanyRole]
            required_role = 'owner'
    """

    def has_permission(self, request, view):
        required_role = self._get_required_role(request, view)

        if not required_role:
            return True

        from apps.rbac.services import MembershipResolver

        requested_company_id = self._get_requested_company_id(request, view)

        try:
            company_id = MembershipResolver.resolve_company(
                request.user,
                requested_company_id,
                role=required_role,
            )
        except Unauthorized:
            SecurityLogger.log_permission_denied(
                request.user,
                requested_company_id,
                required_role,
                ip_address=get_client_ip(request),
            )
            raise

        request.company_id = company_id
        set_log_company(company_id)
        set_company_context(company_id, required_role)

        logger.debug(
            "Permission granted",
            extra={
                'company_id': str(company_id),
                'required_role': required_role,
                'view': view.__class__.__name__,
            }
        )
        return True

    @staticmethod
    def _get_required_role(request, view):
        handler = getattr(view, request.method.lower(), None)
        role = getattr(handler, 'required_role', None)
        if role is None:
            role = getattr(view, 'required_role', None)
        return role

    @staticmethod
    def _get_requested_company_id(request, view):
        company_id = getattr(view, 'kwargs', {}).get('company_id')
        if company_id:
            return company_id

        company_id = request.query_params.get('company_id')
        if company_id:
            return company_id

        if request.method in ('POST', 'PUT', 'PATCH') and isinstance(request.data, dict):
            return request.data.get('company_id') or None

        return None


def requires_role(role):
    """
    Decorator to declare the required membership role on view classes or methods.

    Usage:
        @requires_role('owner')
        class OwnerListView(APIView):
            permission_classes = [IsAuthenticated, HasCompanyRole]

    Or on individual methods:
        class ApprovalListView(APIView):
            permission_classes = [IsAuthenticated, HasCompanyRole]

            @requires_role('owner')
            def post(self, request):
                pass

    Args:
        role: Role string ('owner' or 'employee')

    Returns:
        Decorator function that sets the required_role attribute
    """
    def decorator(view_or_method):
        if isinstance(view_or_method, type):
            view_or_method.required_role = role
            return view_or_method

        @wraps(view_or_method)
        def wrapped(self, request, *args, **kwargs):
            return view_or_method(self, request, *args, **kwargs)

        wrapped.required_role = role
        return wrapped

    return decorator
