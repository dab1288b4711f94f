"""
Role assignment stores.
"""
