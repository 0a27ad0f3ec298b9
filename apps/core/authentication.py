"""
Custom DRF authentication classes.
"""
import logging
from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication, get_authorization_header

from apps.core.sentry_utils import set_user_context

logger = logging.getLogger(__name__)


class JWTAuthentication(BaseAuthentication):
    """
    Authenticate requests with a bearer token issued by the hosted auth provider.

    The token's ``sub`` (or ``user_id``) claim is the profile id. Requests
    without an Authorization header are left anonymous so that public
    endpoints keep working; a malformed or invalid token is rejected.
    """

    keyword = 'Bearer'

    def authenticate(self, request):
        """
        Return ``(profile, token)`` for a valid bearer token.

        Returns:
            tuple: (profile, token) if authenticated, None when no token is sent
        """
        auth = get_authorization_header(request).split()

        if not auth or auth[0].lower() != self.keyword.lower().encode():
            return None

        if len(auth) != 2:
            raise exceptions.AuthenticationFailed('Invalid Authorization header')

        try:
            token = auth[1].decode()
        except UnicodeError:
            raise exceptions.AuthenticationFailed('Invalid Authorization header')

        from apps.rbac.services import AuthService

        profile = AuthService.get_profile_from_jwt(token)
        if profile is None:
            logger.info(
                "Rejected bearer token",
                extra={'path': request.path}
            )
            raise exceptions.AuthenticationFailed('Invalid or expired token')

        set_user_context(profile)
        return (profile, token)

    def authenticate_header(self, request):
        return f'{self.keyword} realm="api"'
