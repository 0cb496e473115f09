"""
security/ - Access Control
===========================
Admin whitelist and rate limiting for bot commands and webhook deliveries.
"""
