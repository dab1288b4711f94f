"""
RBAC core: role catalog, scopes and evaluation.
"""
