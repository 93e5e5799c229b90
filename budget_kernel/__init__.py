"""
Budget Kernel

Governs how budget funds move through region -> organization -> allocation
-> expense under mandatory multi-party approval:
- Approval workflows with ordered, role-gated, quorum-based steps
- Append-only, hash-chained audit ledger
- Row-locked budget mutations that never commit without their audit row
"""

__version__ = "0.1.0"
