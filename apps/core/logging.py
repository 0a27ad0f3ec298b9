"""
Custom logging formatters for structured JSON logging.
"""
import json
import logging
import re
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone
import sentry_sdk


class PIIMasker:
    """
    Utility class to mask sensitive PII data in logs.
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    TOKEN_PATTERN = re.compile(
        r'(api[_-]?key|token|secret|password|authorization)["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)',
        re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r'Bearer\s+[A-Za-z0-9._~+/=-]+', re.IGNORECASE)

    SENSITIVE_FIELDS = {
        'password', 'passwd',
        'token', 'access_token', 'refresh_token', 'bearer_token',
        'secret', 'secret_key', 'jwt_secret',
        'authorization', 'cookie',
    }

    @classmethod
    def mask_email(cls, text):
        """Mask email addresses in text, keeping the first character and domain."""
        if not isinstance(text, str):
            return text

        def mask_email_match(match):
            username, _, domain = match.group(0).partition('@')
            if len(username) > 1:
                username = username[0] + '*' * (len(username) - 1)
            return f"{username}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_email_match, text)

    @classmethod
    def mask_tokens(cls, text):
        """Mask bearer tokens, keys and secrets in text."""
        if not isinstance(text, str):
            return text
        text = cls.BEARER_PATTERN.sub('Bearer ********', text)
        return cls.TOKEN_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        text = cls.mask_email(text)
        text = cls.mask_tokens(text)
        return text

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive data in dictionaries."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if any(sensitive in key.lower() for sensitive in cls.SENSITIVE_FIELDS):
                if value and not isinstance(value, (dict, list)):
                    masked[key] = '********'
                else:
                    masked[key] = value
            elif isinstance(value, dict):
                masked[key] = cls.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    cls.mask_dict(item) if isinstance(item, dict)
                    else cls.mask_text(item) if isinstance(item, str)
                    else item
                    for item in value
                ]
            elif isinstance(value, str):
                masked[key] = cls.mask_text(value)
            else:
                masked[key] = value

        return masked


# Attributes every LogRecord carries; anything else came in through ``extra``.
RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
    'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'request_id', 'company_id',
])


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.
    Includes request_id and company_id from the logging filter if available.
    Automatically masks sensitive PII data.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if getattr(record, 'request_id', None):
            log_data['request_id'] = record.request_id

        if getattr(record, 'company_id', None):
            log_data['company_id'] = str(record.company_id)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [
                    PIIMasker.mask_text(line)
                    for line in traceback.format_exception(*record.exc_info)
                ],
            }

        for key, value in record.__dict__.items():
            if key in RESERVED_ATTRS or key.startswith('_'):
                continue
            if isinstance(value, dict):
                masked_value = PIIMasker.mask_dict(value)
            elif isinstance(value, str):
                masked_value = PIIMasker.mask_text(value)
            else:
                masked_value = value
            try:
                json.dumps(masked_value)
                log_data[key] = masked_value
            except (TypeError, ValueError):
                log_data[key] = PIIMasker.mask_text(str(value))

        return json.dumps(log_data)


class SecurityLogger:
    """
    Centralized security event logging.

    Events go to the ``security`` logger with structured data. Critical
    events are also sent to Sentry for alerting.
    """

    CRITICAL_EVENTS = {
        'four_eyes_violation',
        'cross_tenant_access',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g. 'permission_denied')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context data (profile_id, company_id, ...)
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(
            f"Security event: {event_type}",
            extra=log_data
        )

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            sentry_sdk.capture_message(
                f"Critical security event: {event_type}",
                level='error',
                extras=log_data
            )

    @staticmethod
    def log_permission_denied(profile, company_id, required_role: str, ip_address: str = None):
        """Log a request rejected for a missing membership or role."""
        SecurityLogger.log_event(
            'permission_denied',
            level='warning',
            profile_id=str(profile.id) if profile else None,
            company_id=str(company_id) if company_id else None,
            required_role=required_role,
            ip_address=ip_address
        )

    @staticmethod
    def log_cross_tenant_access(profile, company_id, entity: str, entity_id=None):
        """
        Log an attempt to act on an entity that belongs to another company.

        Args:
            profile: Profile making the attempt
            company_id: Company the entity belongs to
            entity: Entity type (e.g. 'approval_request')
            entity_id: Entity id
        """
        SecurityLogger.log_event(
            'cross_tenant_access',
            level='error',
            profile_id=str(profile.id) if profile else None,
            company_id=str(company_id) if company_id else None,
            entity=entity,
            entity_id=str(entity_id) if entity_id else None
        )

    @staticmethod
    def log_four_eyes_violation(
        initiator_id: str,
        approver_id: str,
        company_id: str,
        operation: str,
        ip_address: str = None
    ):
        """
        Log a four-eyes principle violation attempt.

        This occurs when the requester of an approval request tries to
        approve or reject it themselves.
        """
        SecurityLogger.log_event(
            'four_eyes_violation',
            level='error',
            initiator_id=initiator_id,
            approver_id=approver_id,
            company_id=company_id,
            operation=operation,
            ip_address=ip_address
        )
