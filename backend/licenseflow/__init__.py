"""
LicenseFlow Backend

Background processing for the licensing platform:
- Daily contractual earnings accrual for active licenses
- On-chain USDT payment validation for paid orders
- Order expiry
- Redis-backed job queues, workers and periodic triggers
"""

__version__ = "0.1.0"
