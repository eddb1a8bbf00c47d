"""Installment payment waterfall and wallet ledger engine.

Modules:
- sequence: tracking-code counters
- wallet / collector_wallet: balance-stamped ledger primitives
- installments: SubLoan state machine and payment-history entries
- payments: registration waterfall
- reversal: same-day revert, reset and edit
- route_reconciliation: collection-route totals after a reversal
- loans: loan issuance and sub-loan generation
- maintenance: overdue marking and balance repair
"""
