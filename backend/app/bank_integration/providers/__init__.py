"""
Bank Adapter Implementations

Abstract base class and concrete implementations for bank API protocols.
"""

from .base import BaseBankAdapter
from .open_banking import OpenBankingAdapter

__all__ = ['BaseBankAdapter', 'OpenBankingAdapter']
