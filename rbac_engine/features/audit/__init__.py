"""
Audit trail feature module.

Records permission engine mutations and purges them after the retention
window.
"""
