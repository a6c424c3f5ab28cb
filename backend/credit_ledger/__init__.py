"""
Credit Ledger Module

Prepaid credit balances for AI tools:
- Balance Service: the only writer of balances
- Ledger Store: MongoDB persistence with an append-only transaction log
- Tool Guard: charges a tool's cost before it runs
- Payment Reconciliation: turns Stripe payments into credits exactly once

Collections:
- accounts: one document per principal (balance, plan tier, journal)
- ledger_entries: immutable transaction log
"""

__version__ = "1.0.0"
