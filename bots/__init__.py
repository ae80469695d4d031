"""
Bots package initialization
"""

from bots.review_bot import ReviewBot

__all__ = ['ReviewBot']
