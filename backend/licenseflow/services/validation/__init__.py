"""
On-chain payment validation for paid orders.
"""

from .order_repository import OrderRepository
from .processor import TransactionValidationProcessor, ValidationOutcome

__all__ = [
    "OrderRepository",
    "TransactionValidationProcessor",
    "ValidationOutcome",
]
