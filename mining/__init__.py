"""
Mining holdings and daily reward accrual.

This module provides:
- Package purchases that debit the wallet and open a holding atomically
- Aggregate mining power and expiry sweeps
- A daily reward job that pays each user once per date
"""

from .accrual import RewardAccrualJob, reward_key
from .holdings import HoldingTracker
from .platform import MiningPlatform

__all__ = [
    "HoldingTracker",
    "RewardAccrualJob",
    "MiningPlatform",
    "reward_key",
]
