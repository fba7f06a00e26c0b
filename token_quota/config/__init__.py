"""
Configuration loading for Token Quota.
"""
