"""
Currency Rate Providers

DESIGN DECISION: Rate fetching is an external collaborator.
The normalizer only depends on this small interface, so the live
transport can be swapped without touching conversion logic, and tests
run against a static table with no network access.

Every provider returns rates keyed by ISO code, expressed as
units of that currency per one unit of `pivot_currency`.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Mapping, Optional, Union

from lizhi.config import get_settings
from lizhi.models.ledger import normalize_currency


class RateProvider(ABC):
    """Source of a rate table keyed to one pivot currency."""

    @property
    @abstractmethod
    def pivot_currency(self) -> str:
        """Currency every rate in the table is relative to."""
        pass

    @abstractmethod
    async def latest_rates(self) -> dict[str, Decimal]:
        """
        Fetch the latest rate table.

        Raises:
            RateProviderUnavailable: If the rates cannot be obtained
        """
        pass


class StaticRateProvider(RateProvider):
    """
    Serves a fixed rate table.

    Used offline and in tests. The pivot defaults to the configured
    live pivot currency.
    """

    def __init__(
        self,
        rates: Mapping[str, Union[Decimal, int, str]],
        pivot_currency: Optional[str] = None,
    ):
        self._pivot = normalize_currency(
            pivot_currency or get_settings().currency.live_pivot_currency
        )
        self._rates = {
            normalize_currency(code): Decimal(str(rate))
            for code, rate in rates.items()
        }

    @property
    def pivot_currency(self) -> str:
        return self._pivot

    async def latest_rates(self) -> dict[str, Decimal]:
        if not self._rates:
            raise RateProviderUnavailable("Static rate table is empty")
        return dict(self._rates)


class CurrencyError(Exception):
    """Base exception for currency operations."""
    pass


class RateUnavailable(CurrencyError):
    """No rate is known for one side of a conversion."""

    def __init__(self, source_currency: str, target_currency: str, missing: str):
        self.source_currency = source_currency
        self.target_currency = target_currency
        self.missing = missing
        super().__init__(
            f"No rate for {missing} converting {source_currency} to {target_currency}"
        )


class RateProviderUnavailable(CurrencyError):
    """Raised when a rate provider cannot fetch live rates."""
    pass
