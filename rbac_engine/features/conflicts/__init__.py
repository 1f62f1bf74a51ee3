"""
Conflict detection feature module.

Scans the catalog for hierarchy, exclusivity, orphan and duplicate problems
and fixes the safe ones.
"""
