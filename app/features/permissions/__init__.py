"""
Permission management feature module.

Implements organization-scoped Role-Based Access Control (RBAC) with role
inheritance, permission implications and direct user grants.
"""
