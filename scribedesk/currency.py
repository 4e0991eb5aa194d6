"""Exchange-rate snapshots for settlements paid in a foreign currency.

A snapshot is stored on the ledger entry for audit only; share computation
never reads it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional

import httpx

from .errors import UpstreamUnavailable


logger = logging.getLogger("scribedesk.currency")


class RateProvider(ABC):
    @abstractmethod
    def snapshot(self, base: str, quote: str) -> Decimal:
        """Units of ``quote`` per one unit of ``base``."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class StaticRateProvider(RateProvider):
    """Rates from configuration, all expressed against one base currency."""

    def __init__(self, rates: Mapping[str, Decimal], base: str = "USD") -> None:
        self.base = base.upper()
        self.rates: Dict[str, Decimal] = {k.upper(): Decimal(str(v)) for k, v in rates.items()}
        self.rates[self.base] = Decimal("1")

    def snapshot(self, base: str, quote: str) -> Decimal:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal("1")
        if base not in self.rates or quote not in self.rates:
            raise UpstreamUnavailable(f"No exchange rate configured for {base}/{quote}")
        return self.rates[quote] / self.rates[base]


class HttpRateProvider(RateProvider):
    """Looks rates up from a JSON endpoint returning ``{"rates": {"KES": 129.5, ...}}``."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def snapshot(self, base: str, quote: str) -> Decimal:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal("1")
        try:
            resp = self._client.get(self.url, params={"base": base, "symbols": quote})
            resp.raise_for_status()
            rate = resp.json()["rates"][quote]
            return Decimal(str(rate))
        except httpx.HTTPError as e:
            logger.error(f"Exchange rate lookup {base}/{quote} failed: {e}")
            raise UpstreamUnavailable(f"exchange rate lookup failed: {e}") from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise UpstreamUnavailable(f"exchange rate response malformed for {base}/{quote}") from e

    def close(self) -> None:
        self._client.close()
