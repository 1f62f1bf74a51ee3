"""
Permission management feature module.

Implements guard- and team-scoped Role-Based Access Control with hierarchical
roles, direct grants with expiry and resource scope, and a cached catalog.
"""
