"""
Security Module Initialization

API-key authentication with scopes, and HMAC verification for signed inbound payloads.
"""

from .api_keys import (
    AuthContext,
    authenticate,
    generate_api_key,
    revoke_api_key,
    hash_key,
    has_scope,
)

from .hmac import (
    verify_hmac,
    verify_shopify_hmac,
    shopify_signature,
)

__all__ = [
    "AuthContext",
    "authenticate",
    "generate_api_key",
    "revoke_api_key",
    "hash_key",
    "has_scope",
    "verify_hmac",
    "verify_shopify_hmac",
    "shopify_signature",
]
