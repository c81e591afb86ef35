"""Selectors for the borrowing kernel (read side)."""

from borrowing_kernel.selectors.batch_selector import (
    BatchSelector,
    audit_to_snapshot,
    batch_to_snapshot,
)

__all__ = [
    "BatchSelector",
    "audit_to_snapshot",
    "batch_to_snapshot",
]
