"""
models/ - Domain Layer
======================
Plain dataclasses describing obligations, ledger records, plans,
subscriptions, transactions and decoded gateway webhook events.
No I/O happens here.
"""
