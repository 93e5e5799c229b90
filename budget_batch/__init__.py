"""
budget_batch -- Batch disbursement processing.

Applies many approved payouts to organization budgets in one batch, each
item inside its own SAVEPOINT so that one failing payout never aborts its
siblings, with per-item status that makes re-running a batch safe.

Architecture:
    budget_batch/ is a top-level package built on budget_kernel services
    (ledger, auditor, sequence).  The kernel reaches it only to create its
    tables and to report batch status.

Invariants:
    - SAVEPOINT isolation per item.
    - Batch numbers from SequenceService: ``DB-<fiscal year>-<seq:06d>``.
    - Clock injection (no datetime.now() calls).
    - Audit trail for creation and for every run.
    - Concurrency guard (SELECT ... FOR UPDATE on the batch row).
    - Items that already succeeded are never executed again.
"""
