"""
Tests for the health check endpoint.
"""
import pytest
from unittest.mock import patch
from django.db import DatabaseError


@pytest.mark.django_db
class TestHealthCheckView:
    """Test GET /v1/health/."""

    def test_healthy(self, api_client):
        response = api_client.get('/v1/health/')

        assert response.status_code == 200
        assert response.json() == {'status': 'healthy', 'database': 'healthy'}
        assert response['X-Request-ID']

    def test_database_down(self, api_client):
        with patch('apps.core.views.connection') as mock_connection:
            mock_connection.cursor.side_effect = DatabaseError('down')
            response = api_client.get('/v1/health/')

        assert response.status_code == 503
        assert response.json()['database'] == 'unhealthy'
