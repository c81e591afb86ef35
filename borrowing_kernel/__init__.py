"""
Borrowing Kernel - construction equipment borrowing workflow

A role-gated, audited state machine for equipment borrowing batches with:
- Maker-Checker-Approver-Releaser separation of duties
- Atomic, all-or-nothing transitions per batch
- Hash-chained workflow audit trail
- Idempotent, replay-safe transition requests
- Overdue derived at read time, never stored
"""

__version__ = "0.1.0"
