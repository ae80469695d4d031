"""
Services package initialization
"""

from services.errors import (
    PaymentVerificationError, ValidationError, ChainUnavailable, ChainMismatch,
    DuplicateTransaction, ConcurrentModification, ExpiredPayment
)

__all__ = [
    'PaymentVerificationError', 'ValidationError', 'ChainUnavailable', 'ChainMismatch',
    'DuplicateTransaction', 'ConcurrentModification', 'ExpiredPayment'
]
