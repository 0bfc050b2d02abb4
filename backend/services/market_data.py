"""
Market data providers for condition evaluation.

Providers return samples for a (symbol, metric, timeframe) series ordered
oldest to newest. Broker quotes only give the current value, so the broker
provider builds its own bounded history, one sample per timeframe bar.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from engine.errors import ConfigValidationError, DataUnavailable
from services.broker import BrokerInterface

logger = logging.getLogger(__name__)

TIMEFRAME_SECONDS: Dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}
DEFAULT_TIMEFRAME = "1m"
QUOTE_METRICS = ("price", "volume")


def normalize_timeframe(timeframe: Optional[str]) -> str:
    """Default and validate a timeframe label."""
    label = (timeframe or DEFAULT_TIMEFRAME).strip().lower()
    if label not in TIMEFRAME_SECONDS:
        raise ConfigValidationError(
            f"Unsupported timeframe {timeframe!r}; expected one of {', '.join(TIMEFRAME_SECONDS)}"
        )
    return label


def rolling_sma(values: Sequence[float], window: int) -> List[float]:
    """Simple moving average per sample; early samples average what is available."""
    window = max(1, int(window))
    result = []
    running = 0.0
    for idx, value in enumerate(values):
        running += value
        if idx >= window:
            running -= values[idx - window]
        result.append(running / min(idx + 1, window))
    return result


class MarketDataProvider(ABC):
    """Source of metric samples for condition evaluation."""

    @abstractmethod
    def get_metric(self, symbol: str, metric_type: str, timeframe: Optional[str],
                   lookback: int) -> List[float]:
        """
        Get up to `lookback` samples, oldest first.

        Raises:
            DataUnavailable: when the provider has no data for the series
        """
        pass


class StaticMarketDataProvider(MarketDataProvider):
    """Serves fixed series; used for tests and dry runs."""

    def __init__(self, series: Optional[Dict[Tuple[str, str], List[float]]] = None):
        self._series: Dict[Tuple[str, str], List[float]] = {}
        for (symbol, metric), values in (series or {}).items():
            self.set_series(symbol, metric, values)

    def set_series(self, symbol: str, metric_type: str, values: Sequence[float]) -> None:
        self._series[(symbol.upper(), metric_type.lower())] = [float(v) for v in values]

    def get_metric(self, symbol: str, metric_type: str, timeframe: Optional[str],
                   lookback: int) -> List[float]:
        normalize_timeframe(timeframe)
        lookback = max(1, int(lookback))
        key = (symbol.upper(), metric_type.lower())
        values = self._series.get(key)
        if values is None and key[1] == "sma":
            prices = self._series.get((key[0], "price"))
            if prices:
                values = rolling_sma(prices, lookback)
        if not values:
            raise DataUnavailable(f"No {metric_type} data for {symbol}")
        return list(values[-lookback:])


class BrokerMarketDataProvider(MarketDataProvider):
    """
    Samples broker quotes into per-(symbol, metric, timeframe) histories.

    A sample taken inside the current bar replaces the bar's value; the
    first sample of a new bar appends. Histories keep `history_size` bars.
    """

    def __init__(self, broker: BrokerInterface, history_size: int = 500,
                 clock: Callable[[], float] = time.time):
        self.broker = broker
        self.history_size = max(2, int(history_size))
        self._clock = clock
        self._history: Dict[Tuple[str, str, str], Deque[Tuple[int, float]]] = {}
        self._lock = threading.Lock()

    def get_metric(self, symbol: str, metric_type: str, timeframe: Optional[str],
                   lookback: int) -> List[float]:
        timeframe = normalize_timeframe(timeframe)
        metric = metric_type.lower()
        symbol = symbol.upper()
        lookback = max(1, int(lookback))

        if metric == "sma":
            prices = self._sample(symbol, "price", timeframe)
            return rolling_sma(prices, lookback)[-lookback:]
        if metric not in QUOTE_METRICS:
            raise DataUnavailable(f"Broker market data has no {metric!r} metric for {symbol}")
        return self._sample(symbol, metric, timeframe)[-lookback:]

    def history(self, symbol: str, metric_type: str, timeframe: Optional[str] = None) -> List[float]:
        """Current stored samples without taking a new one."""
        key = (symbol.upper(), metric_type.lower(), normalize_timeframe(timeframe))
        with self._lock:
            return [value for _, value in self._history.get(key, ())]

    def _sample(self, symbol: str, metric: str, timeframe: str) -> List[float]:
        try:
            quote = self.broker.get_market_data(symbol)
        except Exception as exc:
            raise DataUnavailable(f"Market data for {symbol} unavailable: {exc}") from exc

        raw = quote.get(metric) if quote else None
        if raw is None:
            raise DataUnavailable(f"Broker quote for {symbol} has no {metric}")
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise DataUnavailable(f"Broker quote for {symbol} has invalid {metric}: {raw!r}") from exc

        bar = int(self._clock() // TIMEFRAME_SECONDS[timeframe])
        key = (symbol, metric, timeframe)
        with self._lock:
            series = self._history.get(key)
            if series is None:
                series = deque(maxlen=self.history_size)
                self._history[key] = series
            if series and series[-1][0] == bar:
                series[-1] = (bar, value)
            else:
                series.append((bar, value))
            values = [v for _, v in series]
        logger.debug("Sampled %s %s (%s): %s, %d bar(s) held", symbol, metric, timeframe, value, len(values))
        return values
