from __future__ import annotations

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal

from ledgersync.tools.sync.errors import DataError


class CurrencyNormalizer:
    """Converts platform amounts into the ledger's single currency."""

    def __init__(
        self, ledger_currency: str, rates: Mapping[str, float] | None = None
    ) -> None:
        self._ledger_currency = ledger_currency.upper()
        self._rates = {
            code.upper(): Decimal(str(rate)) for code, rate in (rates or {}).items()
        }

    @property
    def ledger_currency(self) -> str:
        return self._ledger_currency

    def to_ledger_cents(self, amount: float, currency: str) -> int:
        """Return the signed amount in ledger-currency minor units.

        Raises:
            DataError: If no rate is configured for ``currency``
        """
        code = currency.upper()
        value = Decimal(str(amount))
        if code != self._ledger_currency:
            rate = self._rates.get(code)
            if rate is None:
                raise DataError(
                    f"No exchange rate configured for {code} -> {self._ledger_currency}"
                )
            value = value * rate
        cents = (value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(cents)
