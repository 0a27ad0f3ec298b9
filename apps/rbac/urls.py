"""
RBAC API URLs.

Provides endpoints for:
- Active company context (read and switch)
- Audit log viewing
"""
from django.urls import path
from apps.rbac.views import CompanyContextView, AuditLogListView

app_name = 'rbac'

urlpatterns = [
    path('company-context', CompanyContextView.as_view(), name='company-context'),
    path('audit-logs', AuditLogListView.as_view(), name='audit-log-list'),
]
