"""Caller identity for the cowriter endpoints.

The rate limiter needs one identifier per caller. Behind the CMS backend
proxy that is the backend user id from ``X-Backend-User``. When the service
is exposed directly, API key authentication can be switched on: the
``X-API-Key`` header is hashed and compared against the configured key
hashes, and the matching key name becomes the identifier.
"""

import hashlib
import hmac
from typing import Dict, Optional

from cowriter.config import AuthConfig

ANONYMOUS_USER = "0"

MISSING_KEY = "Missing API key. Provide X-API-Key header."
INVALID_KEY = "Invalid API key."


class AuthenticationError(Exception):
    """The caller could not be identified; answered with HTTP 401."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of a key, the form stored under ``auth.api_keys``."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def validate_api_key(header_value: Optional[str], api_keys: Dict[str, str]) -> str:
    """Return the name of the configured key matching header_value.

    Every configured hash is compared in constant time, so the response time
    does not reveal which key came closest.

    Raises:
        AuthenticationError: If the header is empty or matches no key.
    """
    if not header_value:
        raise AuthenticationError(MISSING_KEY)

    digest = hash_api_key(header_value)
    matches = [
        name
        for name, expected in api_keys.items()
        if hmac.compare_digest(digest, expected)
    ]
    if not matches:
        raise AuthenticationError(INVALID_KEY)
    return matches[0]


def resolve_user(
    api_key: Optional[str],
    backend_user: Optional[str],
    auth: AuthConfig,
) -> str:
    """Return the identifier the rate limiter should count against.

    Raises:
        AuthenticationError: If auth is enabled and the key does not validate.
    """
    if auth.enabled:
        return validate_api_key(api_key, auth.api_keys)
    return backend_user or ANONYMOUS_USER
