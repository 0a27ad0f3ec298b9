"""
Core middleware for request processing.
"""
import uuid
import logging
import threading
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)

MAX_REQUEST_ID_LENGTH = 64


def set_log_company(company_id):
    """Attach the resolved company id to log records for the current thread."""
    threading.current_thread().company_id = str(company_id) if company_id else None


class RequestIDMiddleware(MiddlewareMixin):
    """
    Inject a unique request_id into each request for tracing.
    The request_id is added to the request object and to log records.
    """

    def process_request(self, request):
        """Generate and attach request_id to the request."""
        request_id = request.META.get('HTTP_X_REQUEST_ID') or str(uuid.uuid4())
        request_id = request_id[:MAX_REQUEST_ID_LENGTH]
        request.request_id = request_id

        thread = threading.current_thread()
        thread.request_id = request_id
        thread.company_id = None

    def process_response(self, request, response):
        """Add request_id to response headers and clear thread context."""
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id

        thread = threading.current_thread()
        thread.request_id = None
        thread.company_id = None
        return response


class LoggingFilter(logging.Filter):
    """
    Add request_id and company_id to log records from thread-local storage.
    """

    def filter(self, record):
        thread = threading.current_thread()

        if not getattr(record, 'request_id', None):
            record.request_id = getattr(thread, 'request_id', None)

        if not getattr(record, 'company_id', None):
            record.company_id = getattr(thread, 'company_id', None)

        return True
