"""ArcPool — authorized invoice financing ledger.

Liquidity providers fund a shared pool; suppliers draw payouts against
invoices once an off-chain authorizer has signed the financing terms.
Repayment returns principal plus interest to the pool, less a protocol fee.
"""

__version__ = "0.1.0"
