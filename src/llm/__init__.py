"""
LLM client module for OpenAI-compatible API integration.
"""

from .client import ChatClient, Generation, create_client, estimate_tokens, is_rate_limit_error

__all__ = ["ChatClient", "Generation", "create_client", "estimate_tokens", "is_rate_limit_error"]
