"""Tenancy core for the multi-tenant storefront platform.

Resolves stores to pooled tenant database connections and runs the credit
ledger and billing scheduler against the shared master database.
"""

__version__ = "0.1.0"
