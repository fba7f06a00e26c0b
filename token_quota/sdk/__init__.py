"""
SDK for Token Quota.

Provides metered access to content generation models.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
