"""Recurring jobs.

- Expiry reconciliation on a fixed interval (in-process loop)
- Cron-compatible single-pass entry point
"""

from membership.scheduler.reconciler import ReconcileReport, reconcile_expired, run_reconciler

__all__ = ["ReconcileReport", "reconcile_expired", "run_reconciler"]
