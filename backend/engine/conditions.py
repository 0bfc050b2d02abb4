"""
Condition Evaluator.
Evaluates workflow conditions against market data samples.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from engine.errors import (
    ActionTimeout,
    ConditionValidationError,
    InsufficientHistory,
    InvalidOperator,
    MalformedValue,
)
from services.market_data import MarketDataProvider
from storage.models import ConditionTypeEnum, WorkflowCondition

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS = (">", "<", "==", ">=", "<=")
CROSSING_OPERATORS = ("crosses_above", "crosses_below")
OPERATORS = NUMERIC_OPERATORS + ("between",) + CROSSING_OPERATORS

METRIC_BY_TYPE = {
    ConditionTypeEnum.PRICE: "price",
    ConditionTypeEnum.VOLUME: "volume",
    ConditionTypeEnum.INDICATOR: "sma",
    ConditionTypeEnum.PATTERN: "pattern",
    ConditionTypeEnum.CUSTOM: "custom",
}
DEFAULT_SMA_WINDOW = 20
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class ConditionResult:
    """Outcome of one evaluation. result=None means not applicable (disabled)."""
    condition_id: Optional[int]
    result: Optional[bool]
    evaluated_at: datetime
    observed: Optional[float] = None

    @property
    def skipped(self) -> bool:
        return self.result is None


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def _parse_number(raw: str) -> float:
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise MalformedValue(f"Expected a number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise MalformedValue(f"Expected a finite number, got {raw!r}")
    return value


def _parse_clock(raw: str) -> float:
    """'HH:MM' or a minute count, as minutes since midnight."""
    text = str(raw).strip()
    match = _CLOCK_RE.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            raise MalformedValue(f"Invalid time of day {raw!r}")
        return float(hours * 60 + minutes)
    value = _parse_number(text)
    if value < 0 or value >= 24 * 60:
        raise MalformedValue(f"Minutes since midnight out of range: {raw!r}")
    return value


def parse_range(raw: str, parse_bound: Callable[[str], float] = _parse_number) -> Tuple[float, float]:
    """
    Parse a `between` value.

    Accepted forms: "[low, high]", "low,high", or {"low": .., "high": ..}.
    """
    text = str(raw or "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise MalformedValue(f"Range object is not valid JSON: {raw!r}") from exc
        if not isinstance(data, dict) or "low" not in data or "high" not in data:
            raise MalformedValue(f"Range object needs 'low' and 'high': {raw!r}")
        parts = [str(data["low"]), str(data["high"])]
    else:
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]
        parts = [s.strip().strip('"') for s in text.split(",")]
    if len(parts) != 2 or not all(parts):
        raise MalformedValue(f"Range must have exactly two bounds: {raw!r}")
    low, high = parse_bound(parts[0]), parse_bound(parts[1])
    if low > high:
        raise MalformedValue(f"Range low bound exceeds high bound: {raw!r}")
    return low, high


def compare(operator: str, samples: List[float], value: str,
            parse_bound: Callable[[str], float] = _parse_number) -> bool:
    """Apply an operator to samples (oldest first) and the comparison value."""
    if operator not in OPERATORS:
        raise InvalidOperator(f"Unsupported operator {operator!r}; expected one of {', '.join(OPERATORS)}")

    if operator in CROSSING_OPERATORS:
        threshold = parse_bound(value)
        if len(samples) < 2:
            raise InsufficientHistory(f"{operator} needs at least 2 samples, got {len(samples)}")
        previous, current = samples[0], samples[-1]
        if operator == "crosses_above":
            return previous <= threshold < current
        return previous >= threshold > current

    current = samples[-1]
    if operator == "between":
        low, high = parse_range(value, parse_bound)
        return low <= current <= high

    threshold = parse_bound(value)
    if operator == ">":
        return current > threshold
    if operator == "<":
        return current < threshold
    if operator == ">=":
        return current >= threshold
    if operator == "<=":
        return current <= threshold
    return math.isclose(current, threshold, rel_tol=1e-9)


def validate_condition(condition_type: Any, operator: str, value: str) -> None:
    """
    Check a condition definition without touching market data.

    Raises:
        InvalidOperator: unknown operator, or a crossing operator on a time condition
        MalformedValue: value does not parse for the operator
    """
    operator = (operator or "").strip()
    if operator not in OPERATORS:
        raise InvalidOperator(f"Unsupported operator {operator!r}; expected one of {', '.join(OPERATORS)}")
    kind = ConditionTypeEnum(condition_type)
    parse_bound = _parse_clock if kind == ConditionTypeEnum.TIME else _parse_number
    if kind == ConditionTypeEnum.TIME and operator in CROSSING_OPERATORS:
        raise InvalidOperator(f"{operator} is not supported for time conditions")
    if operator == "between":
        parse_range(value, parse_bound)
    else:
        parse_bound(value)


class ConditionEvaluator:
    """
    Evaluates conditions against a market data provider.

    Provider calls are synchronous and run on a worker thread, bounded by
    `timeout_seconds`.
    """

    def __init__(self, market_data: MarketDataProvider, timeout_seconds: float = 10.0,
                 clock: Callable[[], datetime] = utc_clock):
        self.market_data = market_data
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def evaluate(self, condition: WorkflowCondition) -> ConditionResult:
        """
        Evaluate one condition and record the result on it.

        Raises:
            ConditionValidationError, InvalidOperator, MalformedValue: misconfiguration
            DataUnavailable, InsufficientHistory, ActionTimeout: transient data problems
        """
        now = self.clock()
        if not condition.is_enabled:
            logger.debug("Condition %s disabled, not applicable", condition.id)
            return ConditionResult(condition_id=condition.id, result=None, evaluated_at=now)

        symbol = (condition.symbol or "").strip()
        if not symbol:
            raise ConditionValidationError(f"Condition {condition.id} has no symbol")
        operator = (condition.operator or "").strip()
        if operator not in OPERATORS:
            raise InvalidOperator(f"Unsupported operator {operator!r}; expected one of {', '.join(OPERATORS)}")

        kind = ConditionTypeEnum(condition.condition_type)
        if kind == ConditionTypeEnum.TIME:
            if operator in CROSSING_OPERATORS:
                raise InvalidOperator(f"{operator} is not supported for time conditions")
            utc_now = now.astimezone(timezone.utc) if now.tzinfo else now
            observed = float(utc_now.hour * 60 + utc_now.minute)
            passed = compare(operator, [observed], condition.value, parse_bound=_parse_clock)
        else:
            samples = await self._samples(condition, kind, symbol, operator)
            observed = samples[-1]
            passed = compare(operator, samples, condition.value)

        condition.last_evaluated = now.astimezone(timezone.utc).replace(tzinfo=None) if now.tzinfo else now
        condition.last_result = passed
        logger.info(
            "Condition %s: %s %s %s %s -> %s",
            condition.id, symbol, kind.value, operator, condition.value, passed,
        )
        return ConditionResult(condition_id=condition.id, result=passed, evaluated_at=now, observed=observed)

    async def _samples(self, condition: WorkflowCondition, kind: ConditionTypeEnum,
                       symbol: str, operator: str) -> List[float]:
        metric = METRIC_BY_TYPE[kind]
        if kind == ConditionTypeEnum.INDICATOR:
            lookback = condition.lookback_period or DEFAULT_SMA_WINDOW
        elif operator in CROSSING_OPERATORS:
            lookback = max(2, condition.lookback_period or 2)
        else:
            lookback = 1
        try:
            samples = await asyncio.wait_for(
                asyncio.to_thread(self.market_data.get_metric, symbol, metric, condition.timeframe, lookback),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ActionTimeout(
                f"Market data for {symbol} timed out after {self.timeout_seconds:g}s"
            ) from exc
        if not samples:
            raise InsufficientHistory(f"No {metric} samples for {symbol}")
        return [float(s) for s in samples]
