"""Pluggable caller identity for stagedoor.

stagedoor does not authenticate users. An upstream gateway verifies the
session and forwards the user id in the ``X-User-Id`` header. When a
gateway token is configured, the gateway must also send
``Authorization: Bearer <token>`` so that only it can assert identities.

A custom resolver can be configured via environment variable:
- STAGEDOOR_IDENTITY_MODULE: Python module path (e.g., 'myapp.identity')

Custom identity modules must expose:
- resolve_identity(authorization: str | None, x_user_id: str | None) -> IdentityResult
- extract_bearer_token(authorization: str | None) -> str | None (optional)

The IdentityResult dataclass is provided by this module for custom implementations.
"""

import importlib
import os
import secrets
from dataclasses import dataclass


@dataclass
class IdentityResult:
    """Result of resolving the caller's identity."""

    valid: bool
    user_id: str | None = None
    error: str | None = None
    status_code: int = 401
    """HTTP status to reply with when ``valid`` is False (401 missing, 403 rejected)."""


def _get_identity_module():
    """Get the configured identity module, or None if not configured."""
    custom_module = os.environ.get("STAGEDOOR_IDENTITY_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import identity module '{custom_module}': {e}") from e
    return None


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Uses custom module's implementation if available, otherwise default.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    module = _get_identity_module()
    if module and hasattr(module, "extract_bearer_token"):
        return module.extract_bearer_token(authorization)

    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip()


def gateway_token_matches(token: str, gateway_token: str) -> bool:
    """Constant-time comparison of a presented token with the gateway token."""
    return secrets.compare_digest(token.encode(), gateway_token.encode())


def resolve_identity(
    authorization: str | None,
    x_user_id: str | None,
    gateway_token: str | None = None,
) -> IdentityResult:
    """
    Work out who is calling.

    Args:
        authorization: The Authorization header value
        x_user_id: The X-User-Id header value
        gateway_token: Shared secret the gateway must present, if any

    Returns:
        IdentityResult with the user id, or the reason it was rejected
    """
    module = _get_identity_module()
    if module is not None:
        return module.resolve_identity(authorization, x_user_id)

    if gateway_token:
        token = extract_bearer_token(authorization)
        if not token:
            return IdentityResult(
                valid=False, error="Authorization: Bearer <token> header required"
            )
        if not gateway_token_matches(token, gateway_token):
            return IdentityResult(valid=False, error="Invalid gateway token", status_code=403)

    user_id = (x_user_id or "").strip()
    if not user_id:
        return IdentityResult(valid=False, error="X-User-Id header required")

    return IdentityResult(valid=True, user_id=user_id)


def get_identity_method_name(gateway_token: str | None = None) -> str:
    """Get the name of the current identity method for logging/debugging."""
    custom_module = os.environ.get("STAGEDOOR_IDENTITY_MODULE")
    if custom_module:
        return f"custom:{custom_module}"

    if gateway_token:
        return "gateway-token"

    return "trusted-header"
