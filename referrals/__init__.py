"""Referral commission cascade"""

from .cascade import ReferralCascade, commission_key

__all__ = ["ReferralCascade", "commission_key"]
