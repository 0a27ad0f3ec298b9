"""
Approval workflow application.

Sensitive mutations (owner addition and removal, employee pay changes) are
captured as approval requests and only take effect after multi-party sign-off.
"""
