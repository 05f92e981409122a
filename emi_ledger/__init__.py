"""
EMI Ledger

Installment scheduling and payment-reconciliation engine for a lending
back office: schedule derivation, single/partial/advance payment recording,
a mirrored payment ledger, and Decimal-exact loan and customer rollups.
"""

__version__ = "1.0.0"
