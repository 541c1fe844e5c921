"""
Helper functions for common infrastructure operations.

This module provides domain-agnostic utility functions for:
- Stable hashing of strings and JSON documents
- HTTP request helpers (client IP extraction)

Usage:
    from core.helpers import canonical_json_hash, get_client_ip

    digest = canonical_json_hash({"Body": {...}})
    ip = get_client_ip(request)
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any

    from django.http import HttpRequest


def hash_string(value: str, algorithm: str = "sha256") -> str:
    """
    Hash a string using the specified algorithm.

    Args:
        value: String to hash
        algorithm: Hash algorithm (sha256, sha512, md5, etc.)

    Returns:
        Hexadecimal hash string
    """
    hasher = hashlib.new(algorithm)
    hasher.update(value.encode("utf-8"))
    return hasher.hexdigest()


def canonical_json_hash(document: Any) -> str:
    """
    Hash a JSON-serializable document independent of key order and spacing.

    Two deliveries of the same payload hash identically even if the sender
    re-serialized it with different whitespace or key ordering.

    Example:
        canonical_json_hash({"a": 1, "b": 2}) == canonical_json_hash({"b": 2, "a": 1})
    """
    serialized = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hash_string(serialized)


def get_client_ip(request: HttpRequest) -> str:
    """
    Extract client IP from request, handling proxies.

    Checks X-Forwarded-For header for proxy chains.
    """
    x_forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR")
    if x_forwarded_for:
        # Take the first IP in the chain (original client)
        ip = x_forwarded_for.split(",")[0].strip()
    else:
        ip = request.META.get("REMOTE_ADDR", "")
    return ip
