"""Currency normalization services."""

from lizhi.services.currency.normalizer import FALLBACK_RATES, CurrencyNormalizer
from lizhi.services.currency.providers import (
    CurrencyError,
    RateProvider,
    RateProviderUnavailable,
    RateUnavailable,
    StaticRateProvider,
)

__all__ = [
    "FALLBACK_RATES",
    "CurrencyError",
    "CurrencyNormalizer",
    "RateProvider",
    "RateProviderUnavailable",
    "RateUnavailable",
    "StaticRateProvider",
]
