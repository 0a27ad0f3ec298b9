"""
Domain exceptions and the DRF exception handler.

Every error leaves the API as ``{"error": str, "details"?: any, "request_id": str}``
with a status drawn from 400, 401, 403, 404, 409, 422 and 500.
"""
import logging
from django.conf import settings
from django.db import DatabaseError
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class OpsdeskException(Exception):
    """Base exception for Opsdesk-specific errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = 'ERROR'

    def __init__(self, message, details=None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_payload(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class Unauthenticated(OpsdeskException):
    """Raised when the request carries no valid session."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = 'UNAUTHENTICATED'


class Unauthorized(OpsdeskException):
    """Raised when the profile lacks the required membership or role."""
    status_code = status.HTTP_403_FORBIDDEN
    code = 'UNAUTHORIZED'


class NotFound(OpsdeskException):
    """Raised when an entity is absent or outside the caller's tenant scope."""
    status_code = status.HTTP_404_NOT_FOUND
    code = 'NOT_FOUND'


class ValidationError(OpsdeskException):
    """Raised when input validation fails. ``details`` holds field errors."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = 'VALIDATION_ERROR'


class Conflict(OpsdeskException):
    """Raised when a state transition is not permitted."""
    status_code = status.HTTP_409_CONFLICT
    code = 'CONFLICT'


class Internal(OpsdeskException):
    """Raised for unexpected datastore or logic failures."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = 'INTERNAL'


def _payload_from_drf(exc, response):
    """Flatten a DRF error response into the standard error shape."""
    if isinstance(exc, drf_exceptions.ValidationError):
        return {
            'error': 'Validation error',
            'code': ValidationError.code,
            'details': response.data,
        }

    data = response.data
    if isinstance(data, dict) and 'detail' in data:
        message = str(data['detail'])
    else:
        message = str(data)

    if isinstance(exc, (drf_exceptions.NotAuthenticated, drf_exceptions.AuthenticationFailed)):
        code = Unauthenticated.code
    elif isinstance(exc, drf_exceptions.PermissionDenied):
        code = Unauthorized.code
    elif response.status_code == status.HTTP_404_NOT_FOUND:
        code = NotFound.code
    else:
        code = getattr(exc, 'default_code', 'error').upper()

    return {'error': message, 'code': code}


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns a consistent format.

    Domain exceptions map to their own status codes, DRF exceptions keep
    theirs (serializer errors become 422), anything else is reported as an
    internal error without retrying.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None
    view = context.get('view')

    if isinstance(exc, OpsdeskException):
        response = Response(exc.to_payload(), status=exc.status_code)
    else:
        response = exception_handler(exc, context)
        if response is not None:
            payload = _payload_from_drf(exc, response)
            if isinstance(exc, drf_exceptions.ValidationError):
                response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
            response.data = payload

    if response is None:
        logger.error(
            f"Unhandled API exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
                'view': view.__class__.__name__ if view else None,
            },
            exc_info=True
        )
        message = 'Datastore error' if isinstance(exc, DatabaseError) else 'Internal server error'
        payload = {'error': message, 'code': Internal.code}
        if settings.DEBUG:
            payload['details'] = {'message': str(exc)}
        response = Response(payload, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
    elif response.status_code >= 500:
        logger.error(
            f"API Exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
    else:
        logger.warning(
            f"API request rejected: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'status_code': response.status_code,
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            }
        )

    if request_id and isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response
