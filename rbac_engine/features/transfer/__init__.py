"""
Catalog import/export feature module.
"""
