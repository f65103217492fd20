"""Models package."""

from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
