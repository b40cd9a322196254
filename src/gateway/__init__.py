"""API key gateway for automation clients.

This module provides:
- ApiKeyGateway: key authentication, allowlist enforcement and RPC forwarding
- issue_api_key: generation of raw keys with their stored hash and prefix
"""

from src.gateway.gateway import (
    ALLOWED_RPCS,
    ApiKeyContext,
    ApiKeyGateway,
    GatewayRequestState,
    GatewayResult,
)
from src.gateway.keys import IssuedApiKey, extract_api_key, hash_api_key, issue_api_key

__all__ = [
    "ALLOWED_RPCS",
    "ApiKeyContext",
    "ApiKeyGateway",
    "GatewayRequestState",
    "GatewayResult",
    "IssuedApiKey",
    "extract_api_key",
    "hash_api_key",
    "issue_api_key",
]
