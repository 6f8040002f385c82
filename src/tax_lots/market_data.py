"""Market price inputs.

The engine never fetches prices itself. Callers hand in either a plain
``{symbol: price}`` mapping or any object with ``current_price(symbol)``.
"""

from typing import Mapping, Optional, Protocol, Union, runtime_checkable


@runtime_checkable
class PriceSource(Protocol):
    """Anything that can quote a current price synchronously."""

    def current_price(self, symbol: str) -> Optional[float]:
        ...


class StaticPriceSource:
    """Price source backed by a fixed mapping.

    Example:
        prices = StaticPriceSource({"AAPL": 182.5, "MSFT": 410.0})
        prices.current_price("AAPL")  # 182.5
    """

    def __init__(self, prices: Mapping[str, float]):
        self._prices = {symbol.upper(): float(price) for symbol, price in prices.items()}

    def current_price(self, symbol: str) -> Optional[float]:
        return self._prices.get(symbol.upper())

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._prices


PriceInput = Union[PriceSource, Mapping[str, float]]


def as_price_source(prices: PriceInput) -> PriceSource:
    """Wrap a mapping into a PriceSource; pass sources through."""
    if isinstance(prices, PriceSource):
        return prices
    return StaticPriceSource(prices)
