"""
Token Quota.

Daily token allowances, purchased top-ups and subscription tier resolution
for content generation features.
"""

__version__ = "0.1.0"
