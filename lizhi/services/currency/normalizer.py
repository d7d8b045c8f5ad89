"""
Currency Normalizer

Converts amounts between currency codes with a two-hop lookup through
a pivot currency: source -> pivot -> target.

DESIGN DECISION: Conversion is synchronous and never raises.
Balance computation must not wait on the network, so `convert` only
reads whatever table is already loaded:
1. The live table, once `refresh_rates` has succeeded
2. Otherwise a hardcoded fallback table (different pivot), with the
   degraded mode logged once
3. A missing rate returns the amount unconverted and flags the result

Refreshing is the only async step and is retried with tenacity.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lizhi.config import CurrencySettings, get_settings
from lizhi.models.ledger import normalize_currency
from lizhi.models.reports import ConversionResult
from lizhi.services.currency.providers import (
    RateProvider,
    RateProviderUnavailable,
    RateUnavailable,
)


logger = structlog.get_logger(__name__)


# Approximate units per 1 USD, used only when no live table is loaded
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "AUD": Decimal("1.58"),
    "CNY": Decimal("7.25"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("151.0"),
    "SGD": Decimal("1.34"),
    "HKD": Decimal("7.82"),
    "NZD": Decimal("1.63"),
    "CAD": Decimal("1.35"),
    "CHF": Decimal("0.88"),
    "BRL": Decimal("5.0"),
    "KRW": Decimal("1350.0"),
    "INR": Decimal("83.0"),
}


class CurrencyNormalizer:
    """
    Rate table holder and converter.

    One instance is injected wherever amounts need normalizing; it is
    configured explicitly instead of living as a process-wide singleton.
    """

    def __init__(
        self,
        provider: Optional[RateProvider] = None,
        settings: Optional[CurrencySettings] = None,
        fallback_rates: Optional[dict[str, Decimal]] = None,
        retry_wait=None,
    ):
        """
        Args:
            provider: Live rate source. Without one the fallback table is used.
            settings: Currency settings; defaults to the environment.
            fallback_rates: Override of the hardcoded fallback table.
            retry_wait: tenacity wait strategy between refresh attempts.
        """
        self._settings = settings or get_settings().currency
        self._provider = provider
        self._fallback_rates = dict(fallback_rates or FALLBACK_RATES)
        self._fallback_pivot = self._settings.fallback_pivot_currency
        self._fallback_rates[self._fallback_pivot] = Decimal("1")
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

        self._live_rates: Optional[dict[str, Decimal]] = None
        self._live_pivot: Optional[str] = None
        self._last_updated: Optional[datetime] = None
        self._degraded_logged = False

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def base_currency(self) -> str:
        return self._settings.base_currency

    @property
    def pivot_currency(self) -> str:
        """Pivot of the table currently in use."""
        return self._live_pivot or self._fallback_pivot

    @property
    def is_degraded(self) -> bool:
        """True while conversions use the hardcoded fallback table."""
        return self._live_rates is None

    @property
    def last_updated(self) -> Optional[datetime]:
        """When the live table was last loaded, if ever."""
        return self._last_updated

    @property
    def available_currencies(self) -> list[str]:
        codes = set(self._fallback_rates)
        if self._live_rates:
            codes.update(self._live_rates)
        return sorted(codes)

    def _is_fresh(self) -> bool:
        if self._live_rates is None or self._last_updated is None:
            return False
        age = datetime.utcnow() - self._last_updated
        return age < timedelta(seconds=self._settings.rate_cache_ttl_seconds)

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh_rates(self, force: bool = False) -> bool:
        """
        Load the latest live table from the provider.

        Skips the fetch while the current table is younger than the
        cache TTL unless `force` is set. On failure the previous table
        (or the fallback) stays in use.

        Returns:
            True if a live table is in use afterwards
        """
        if self._provider is None:
            self._log_degraded("No rate provider configured")
            return False

        if not force and self._is_fresh():
            return True

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.fetch_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception_type(RateProviderUnavailable),
                reraise=True,
            ):
                with attempt:
                    raw_rates = await self._provider.latest_rates()
            rates = self._parse_rates(raw_rates, self._provider.pivot_currency)
        except Exception as e:
            # Keep whatever table we had
            logger.warning(
                "rates_refresh_failed",
                error=str(e),
                keeping_live_table=self._live_rates is not None,
            )
            if self._live_rates is None:
                self._log_degraded(str(e))
            return self._live_rates is not None

        self._live_rates = rates
        self._live_pivot = normalize_currency(self._provider.pivot_currency)
        self._last_updated = datetime.utcnow()
        self._degraded_logged = False

        logger.info(
            "rates_refreshed",
            pivot_currency=self._live_pivot,
            currency_count=len(rates),
        )
        return True

    @staticmethod
    def _parse_rates(raw_rates: dict, pivot_currency: str) -> dict[str, Decimal]:
        pivot = normalize_currency(pivot_currency)
        rates: dict[str, Decimal] = {}
        for code, value in raw_rates.items():
            rate = Decimal(str(value))
            if rate <= 0:
                logger.warning("rate_ignored", currency=code, rate=str(rate))
                continue
            rates[normalize_currency(code)] = rate
        if not rates:
            raise RateProviderUnavailable("Provider returned no usable rates")
        rates[pivot] = Decimal("1")
        return rates

    def _log_degraded(self, reason: str) -> None:
        if self._degraded_logged:
            return
        self._degraded_logged = True
        logger.warning(
            "rates_degraded",
            reason=reason,
            fallback_pivot=self._fallback_pivot,
        )

    # =========================================================================
    # CONVERSION
    # =========================================================================

    def _lookup(self, source: str, target: str) -> tuple[Decimal, bool]:
        """
        Rate from source to target and whether the fallback table supplied it.

        Raises:
            RateUnavailable: If neither table knows both currencies
        """
        if self._live_rates is not None:
            source_rate = self._live_rates.get(source)
            target_rate = self._live_rates.get(target)
            if source_rate is not None and target_rate is not None:
                return target_rate / source_rate, False
        else:
            self._log_degraded("No live rate table loaded")

        source_rate = self._fallback_rates.get(source)
        target_rate = self._fallback_rates.get(target)
        if source_rate is None:
            raise RateUnavailable(source, target, source)
        if target_rate is None:
            raise RateUnavailable(source, target, target)
        return target_rate / source_rate, True

    def rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Units of `to_currency` per one `from_currency`, or None if unknown."""
        try:
            source = normalize_currency(from_currency)
            target = normalize_currency(to_currency)
        except ValueError:
            return None
        if source == target:
            return Decimal("1")
        try:
            rate, _ = self._lookup(source, target)
        except RateUnavailable:
            return None
        return rate

    def convert_with_status(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
    ) -> ConversionResult:
        """
        Convert an amount and report how the conversion went.

        Never raises. When a rate is missing the amount comes back
        unconverted with `rate_unavailable` set.
        """
        try:
            source = normalize_currency(from_currency)
            target = normalize_currency(to_currency)
        except ValueError as e:
            logger.warning(
                "rate_unavailable",
                from_currency=from_currency,
                to_currency=to_currency,
                error=str(e),
            )
            return ConversionResult(
                amount=amount,
                source_currency=from_currency,
                target_currency=to_currency,
                rate_unavailable=True,
                message=str(e),
            )

        if source == target:
            return ConversionResult(
                amount=amount,
                source_currency=source,
                target_currency=target,
            )

        try:
            rate, degraded = self._lookup(source, target)
        except RateUnavailable as e:
            logger.warning(
                "rate_unavailable",
                from_currency=source,
                to_currency=target,
                missing=e.missing,
            )
            return ConversionResult(
                amount=amount,
                source_currency=source,
                target_currency=target,
                rate_unavailable=True,
                degraded=self.is_degraded,
                message=str(e),
            )

        return ConversionResult(
            amount=amount * rate,
            source_currency=source,
            target_currency=target,
            degraded=degraded,
        )

    def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        """
        Convert an amount between currencies.

        Same-currency conversion returns the very same amount object.
        """
        if from_currency == to_currency:
            return amount
        return self.convert_with_status(amount, from_currency, to_currency).amount

    def convert_to_base(self, amount: Decimal, from_currency: str) -> ConversionResult:
        """Convert into the configured reporting currency."""
        return self.convert_with_status(amount, from_currency, self.base_currency)
