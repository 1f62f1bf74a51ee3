"""
Role-based access control engine.

Permissions and roles are scoped by guard (and optionally team), roles may
inherit from a parent role, and every check is resolved against a cached
snapshot of the catalog. ``build_engine`` wires the components together.
"""
__version__ = "0.1.0"
