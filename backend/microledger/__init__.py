"""microledger: installment payment waterfall and wallet ledger engine."""
