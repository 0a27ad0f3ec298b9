"""
Company (tenant) model.
"""
import secrets
import string
from django.db import models
from apps.core.models import BaseModel

COMPANY_CODE_LENGTH = 8
COMPANY_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_company_code():
    """Return a random invite code, e.g. ``K7Q2M9XA``."""
    return ''.join(secrets.choice(COMPANY_CODE_ALPHABET) for _ in range(COMPANY_CODE_LENGTH))


class CompanyManager(models.Manager):
    """Manager for Company queries."""

    def by_code(self, company_code):
        """Find a company by its invite code (case-insensitive)."""
        return self.filter(company_code=(company_code or '').strip().upper()).first()

    def for_profile(self, profile):
        """Companies the profile holds any membership in."""
        return self.filter(memberships__profile=profile).distinct().order_by('name')


class Company(BaseModel):
    """
    Isolated business account.

    Employees join with the ``company_code``; owners manage everything else.
    """

    name = models.CharField(
        max_length=255,
        help_text="Business name"
    )
    company_code = models.CharField(
        max_length=16,
        unique=True,
        default=generate_company_code,
        help_text="Unique code employees use to join"
    )

    # Contact
    email = models.EmailField(
        blank=True,
        help_text="Business contact email"
    )
    phone = models.CharField(
        max_length=32,
        blank=True,
        help_text="Business contact phone"
    )
    website = models.URLField(
        blank=True,
        help_text="Business website"
    )

    # Address
    address = models.CharField(max_length=255, blank=True)
    address_line_2 = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=100, blank=True)
    zipcode = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=100, blank=True)

    created_by = models.ForeignKey(
        'rbac.Profile',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='companies_created',
        help_text="Profile that created the company"
    )

    objects = CompanyManager()

    class Meta:
        db_table = 'companies'
        ordering = ['name']
        verbose_name_plural = 'companies'

    def __str__(self):
        return self.name
