"""
Pytest configuration and fixtures.
"""
import pytest
from decimal import Decimal
from django.conf import settings
import django
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.SECURE_SSL_REDIRECT = False
    settings.SENTRY_DSN = None
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database from the current models."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def auth_client():
    """
    Return a factory building an API client that carries a bearer token
    for the given profile.
    """
    from rest_framework.test import APIClient
    from apps.rbac.services import AuthService

    def make_client(profile):
        client = APIClient()
        token = AuthService.generate_jwt(profile)
        client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')
        return client

    return make_client


@pytest.fixture
def make_profile(db):
    """Return a factory creating profiles."""
    from apps.rbac.models import Profile

    def create(email, full_name=''):
        return Profile.objects.create_user(email=email, full_name=full_name)

    return create


@pytest.fixture
def owner(make_profile):
    """Primary owner of ``company``."""
    return make_profile('owner@acme.test', 'Olive Owner')


@pytest.fixture
def second_owner(make_profile):
    """Co-owner of ``company``."""
    return make_profile('second@acme.test', 'Sam Second')


@pytest.fixture
def third_owner(make_profile):
    """Profile that becomes a third owner when requested by a test."""
    return make_profile('third@acme.test', 'Tara Third')


@pytest.fixture
def employee(make_profile):
    """Approved employee of ``company``."""
    return make_profile('employee@acme.test', 'Eli Employee')


@pytest.fixture
def outsider(make_profile):
    """Profile that owns ``other_company`` and has no role in ``company``."""
    return make_profile('outsider@globex.test', 'Oscar Outsider')


@pytest.fixture
def company(db, owner):
    """Company with ``owner`` as its primary owner."""
    from apps.companies.models import Company
    from apps.rbac.models import Membership, Role

    company = Company.objects.create(name='Acme Ltd', created_by=owner)
    Membership.objects.create(
        profile=owner, company=company, role=Role.OWNER, is_primary_owner=True
    )
    return company


@pytest.fixture
def other_company(db, outsider):
    """Company owned by ``outsider`` only."""
    from apps.companies.models import Company
    from apps.rbac.models import Membership, Role

    company = Company.objects.create(name='Globex Inc', created_by=outsider)
    Membership.objects.create(
        profile=outsider, company=company, role=Role.OWNER, is_primary_owner=True
    )
    return company


@pytest.fixture
def add_owner(db):
    """Return a helper granting the owner role in a company."""
    from apps.rbac.models import Membership, Role

    def grant(profile, company):
        return Membership.objects.create(profile=profile, company=company, role=Role.OWNER)

    return grant


@pytest.fixture
def co_owned_company(company, second_owner, add_owner):
    """``company`` with ``owner`` and ``second_owner``."""
    add_owner(second_owner, company)
    return company


@pytest.fixture
def employee_membership(company, employee):
    """Approved employee membership with an hourly rate."""
    from apps.rbac.models import Membership, Role, EmployeeApprovalStatus

    return Membership.objects.create(
        profile=employee,
        company=company,
        role=Role.EMPLOYEE,
        approval_status=EmployeeApprovalStatus.APPROVED,
        hourly_rate=Decimal('20.00'),
    )
