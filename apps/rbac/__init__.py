"""
RBAC (Role-Based Access Control) application.

Provides multi-company access control with:
- Global profile identity issued by the hosted auth provider
- Owner and employee memberships per company
- A per-profile active context (company, role)
- Four-eyes validation
- Comprehensive audit logging
"""
