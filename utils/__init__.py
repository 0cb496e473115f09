"""
utils/ - Shared Helpers
========================
Logging, calendar arithmetic and the payment event monitor.
"""
