"""
URL configuration for Opsdesk.
"""
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    # API Documentation
    path('schema/', SpectacularAPIView.as_view(), name='schema'),
    path('schema/swagger/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),

    # API v1
    path('v1/', include('apps.core.urls')),  # Health check
    path('v1/', include('apps.rbac.urls')),  # Company context, audit logs
    path('v1/', include('apps.companies.urls')),  # Companies, join, owners
    path('v1/', include('apps.approvals.urls')),  # Approvals, owner change requests
]
