"""
Sentry utilities for adding context and breadcrumbs.
"""
import sentry_sdk
from django.conf import settings


def set_company_context(company_id, role=None):
    """
    Set company context in Sentry for error tracking.

    Args:
        company_id: Company the request is scoped to
        role: Role the profile is acting as
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.set_context("company", {
        "id": str(company_id),
        "role": role,
    })
    sentry_sdk.set_tag("company_id", str(company_id))


def set_user_context(profile):
    """
    Set profile context in Sentry. Only the id is sent, never the email.

    Args:
        profile: Profile model instance
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.set_user({
        "id": str(profile.id),
        "is_active": profile.is_active,
    })


def add_breadcrumb(category, message, level="info", data=None):
    """
    Add a breadcrumb to Sentry for debugging.

    Args:
        category: Category of the breadcrumb (e.g., "approvals", "context")
        message: Human-readable message
        level: Severity level (debug, info, warning, error)
        data: Optional dictionary of additional data
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )


def capture_exception(exception, **kwargs):
    """
    Capture an exception in Sentry with optional context.

    Args:
        exception: The exception to capture
        **kwargs: Additional context to attach
    """
    if not settings.SENTRY_DSN:
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in kwargs.items():
            scope.set_context(key, value)
        sentry_sdk.capture_exception(exception)
