"""
Company API URLs.
"""
from django.urls import path
from apps.companies.views import CompanyListView, JoinCompanyView, CompanyOwnersView

app_name = 'companies'

urlpatterns = [
    path('companies', CompanyListView.as_view(), name='company-list'),
    path('companies/join', JoinCompanyView.as_view(), name='company-join'),
    path('companies/<uuid:company_id>/owners', CompanyOwnersView.as_view(), name='company-owners'),
]
