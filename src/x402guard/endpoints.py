"""
Endpoint identifiers and the allowlist membership rule.

An endpoint id is the keccak-256 hash of the endpoint string, so the engine
only ever compares fixed-width hashes and never parses URLs. The calling
protocol layer is responsible for canonicalizing the string before hashing.
"""

from __future__ import annotations

from eth_utils import keccak


def endpoint_id_for_url(url: str) -> str:
    """Return ``0x``-prefixed keccak-256 of the UTF-8 endpoint string."""
    if not url:
        raise ValueError("Endpoint URL must be non-empty")
    return "0x" + keccak(url.encode("utf-8")).hex()


def normalize_endpoint_id(value: str) -> str:
    """Validate a 32-byte hex endpoint id and return it lower-cased."""
    if not isinstance(value, str):
        raise ValueError("endpoint_id must be a hex string")
    candidate = value.strip().lower()
    hex_part = candidate[2:] if candidate.startswith("0x") else candidate
    if len(hex_part) != 64 or any(ch not in "0123456789abcdef" for ch in hex_part):
        raise ValueError("endpoint_id must be 32 bytes (0x + 64 hex chars)")
    return "0x" + hex_part


def is_endpoint_permitted(allow_all_endpoints: bool, allowed: bool) -> bool:
    return allow_all_endpoints or allowed
