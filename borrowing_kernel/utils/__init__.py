"""Utility modules for the borrowing kernel."""

from borrowing_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
)
from borrowing_kernel.utils.idempotency import (
    generate_idempotency_key,
    parse_idempotency_key,
)

__all__ = [
    "hash_payload",
    "hash_audit_entry",
    "canonicalize_json",
    "generate_idempotency_key",
    "parse_idempotency_key",
]
