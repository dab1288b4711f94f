"""
Decision cache backends.
"""
