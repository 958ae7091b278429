"""Core modules for aptkit"""

from .cache import DepCache
from .transaction import TransactionEngine, TransactionResult

__all__ = ['DepCache', 'TransactionEngine', 'TransactionResult']
