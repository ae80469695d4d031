"""
Database package initialization
"""

from database.models import Database
from database.verification_store import VerificationStore

__all__ = ['Database', 'VerificationStore']
