"""
Core application: shared base model, errors, logging, authentication and permissions.
"""
