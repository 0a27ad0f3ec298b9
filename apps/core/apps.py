from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging
import sys

logger = logging.getLogger(__name__)

GENERATE_HINT = "python -c \"import secrets; print(secrets.token_urlsafe(32))\""


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """
        Perform startup validation checks when Django initializes.

        Only serving processes are validated so that management commands and
        the test runner work with development defaults.
        """
        if not self._is_serving_process():
            return

        self._validate_jwt_configuration()
        self._validate_security_settings()

        logger.info("Startup security validations passed")

    @staticmethod
    def _is_serving_process():
        if sys.argv and 'gunicorn' in sys.argv[0]:
            return True
        return len(sys.argv) > 1 and sys.argv[1] == 'runserver'

    def _validate_jwt_configuration(self):
        """Validate the secret used to verify auth provider tokens."""
        jwt_secret = getattr(settings, 'JWT_SECRET_KEY', None)
        secret_key = getattr(settings, 'SECRET_KEY', None)

        if not jwt_secret:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be set to the auth provider's signing secret."
            )

        if len(jwt_secret) < 32:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY must be at least 32 characters long. "
                f"Current length: {len(jwt_secret)}. Generate one with: {GENERATE_HINT}"
            )

        if jwt_secret == secret_key:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be different from SECRET_KEY."
            )

        unique_chars = len(set(jwt_secret))
        if unique_chars < 16:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY has insufficient entropy. "
                f"Found only {unique_chars} unique characters, need at least 16."
            )

        logger.info("JWT configuration validated")

    def _validate_security_settings(self):
        """Validate general security settings."""
        secret_key = getattr(settings, 'SECRET_KEY', None)

        if not secret_key:
            raise ImproperlyConfigured("SECRET_KEY must be set in environment variables.")

        if not settings.DEBUG:
            secret_lower = secret_key.lower()
            for pattern in ('django-insecure', 'change-me', 'insecure'):
                if pattern in secret_lower:
                    raise ImproperlyConfigured(
                        f"SECRET_KEY appears to be a default or weak value (contains '{pattern}')."
                    )

            if not getattr(settings, 'SECURE_SSL_REDIRECT', False):
                logger.warning(
                    "SECURE_SSL_REDIRECT is not enabled in production. "
                    "HTTPS should be enforced."
                )

        logger.info("Security settings validated")
