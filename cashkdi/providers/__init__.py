"""
Payment provider adapters and the registry that dispatches to them.
"""
from .base import ProviderAdapter
from .cards import CardsAdapter
from .mtn_momo import MtnMomoAdapter
from .orange_money import OrangeMoneyAdapter
from .registry import ADAPTERS, ProviderRegistry, build_registry

__all__ = [
    "ProviderAdapter",
    "OrangeMoneyAdapter",
    "MtnMomoAdapter",
    "CardsAdapter",
    "ProviderRegistry",
    "ADAPTERS",
    "build_registry",
]
