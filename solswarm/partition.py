"""
Partition Generator
===================

Pure computation of share sequences that hit an exact total:

- ``bounded_integer_partition``: N integers in [min, max] summing to total
- ``random_percentages``: N fractional percentages in [min, max] summing to 100
- ``unique_arithmetic_percentages``: N strictly increasing percentages in an
  arithmetic progression summing to 100
- ``shares_to_amounts``: percentages -> integer amounts with floor rounding

The random variants draw left to right, bounding each draw so that the
remaining positions can still reach the total. This never needs rejection
sampling, at the cost of a mild pull toward the bound midpoint for the
later shares. That bias is accepted.

All functions take an explicit ``random.Random`` so results are
reproducible under a fixed seed.
"""

import random
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence

from solswarm.errors import InfeasiblePartitionError

PERCENT_TOTAL = 100.0
PERCENT_DECIMALS = 6
DEFAULT_COMMON_DIFFERENCE = 0.01
MAX_DIFFERENCE_HALVINGS = 50

# Float slack when comparing fractional bounds
_EPSILON = 1e-9


def _check_count(n: int):
    if not isinstance(n, int) or n < 1:
        raise InfeasiblePartitionError(f"Share count must be a positive integer, got {n!r}")


def _apply_residual(values: List[float], total: float, decimals: int = PERCENT_DECIMALS) -> List[float]:
    """Round every value and move the rounding error onto the last one."""
    rounded = [round(v, decimals) for v in values]
    residual = round(total - sum(rounded), decimals)
    rounded[-1] = round(rounded[-1] + residual, decimals)
    return rounded


def bounded_integer_partition(
    n: int,
    total: int,
    min_value: int,
    max_value: int,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """
    Split ``total`` into ``n`` integers, each within [min_value, max_value].

    Raises:
        InfeasiblePartitionError: If n*min > total or n*max < total (or the
            bounds are inverted)
    """
    _check_count(n)
    if min_value > max_value:
        raise InfeasiblePartitionError(f"min {min_value} exceeds max {max_value}")
    rng = rng or random.Random()

    shares: List[int] = []
    remaining = total
    for i in range(n):
        left = n - i
        low = max(min_value, remaining - (left - 1) * max_value)
        high = min(max_value, remaining - (left - 1) * min_value)
        if low > high:
            raise InfeasiblePartitionError(
                f"Cannot split {total} into {n} shares within [{min_value}, {max_value}]"
            )
        value = rng.randint(low, high)
        shares.append(value)
        remaining -= value

    return shares


def random_percentages(
    n: int,
    min_pct: float = 1.0,
    max_pct: float = 10.0,
    rng: Optional[random.Random] = None,
    total: float = PERCENT_TOTAL,
) -> List[float]:
    """
    Draw ``n`` fractional percentages within [min_pct, max_pct] summing to ``total``.

    Values are rounded to 6 decimals and the rounding residual is added to
    the last slot.

    Raises:
        InfeasiblePartitionError: If n*min_pct > total or n*max_pct < total
    """
    _check_count(n)
    if min_pct > max_pct:
        raise InfeasiblePartitionError(f"min {min_pct} exceeds max {max_pct}")
    rng = rng or random.Random()

    values: List[float] = []
    remaining = float(total)
    for i in range(n):
        left = n - i
        low = max(min_pct, remaining - (left - 1) * max_pct)
        high = min(max_pct, remaining - (left - 1) * min_pct)
        if low > high + _EPSILON:
            raise InfeasiblePartitionError(
                f"Cannot split {total}% into {n} shares within [{min_pct}, {max_pct}]"
            )
        high = max(high, low)
        value = remaining if left == 1 else rng.uniform(low, high)
        values.append(value)
        remaining -= value

    return _apply_residual(values, total)


def unique_arithmetic_percentages(
    n: int,
    common_difference: float = DEFAULT_COMMON_DIFFERENCE,
    max_halvings: int = MAX_DIFFERENCE_HALVINGS,
    total: float = PERCENT_TOTAL,
) -> List[float]:
    """
    Produce ``n`` strictly increasing percentages a, a+d, a+2d, ... summing to ``total``.

    The first term is a = (total - d*n*(n-1)/2) / n. While a <= 0 the common
    difference is halved, up to ``max_halvings`` times.

    Raises:
        InfeasiblePartitionError: If no positive first term exists, or the
            difference has shrunk below the rounding precision
    """
    _check_count(n)
    d = common_difference

    for _ in range(max_halvings + 1):
        first = (total - d * n * (n - 1) / 2) / n
        if first > 0:
            break
        d /= 2
    else:
        raise InfeasiblePartitionError(f"No positive first term for {n} arithmetic shares")

    values = _apply_residual([first + i * d for i in range(n)], total)

    if any(b <= a for a, b in zip(values, values[1:])):
        raise InfeasiblePartitionError(
            f"{n} shares need a common difference finer than {PERCENT_DECIMALS} decimals"
        )
    return values


def shares_to_amounts(percentages: Sequence[float], total: int) -> List[int]:
    """
    Convert percentages to integer amounts of ``total``.

    Every amount but the last is floored; the last receives whatever is left
    so the amounts sum exactly to ``total``.

    Raises:
        ValueError: If the percentages do not sum to 100 within 1e-6
    """
    if not percentages:
        return []
    if abs(sum(percentages) - PERCENT_TOTAL) > 1e-6:
        raise ValueError(f"Percentages must sum to 100, got {sum(percentages)}")

    amounts: List[int] = []
    allocated = 0
    for pct in percentages[:-1]:
        amount = int((Decimal(total) * Decimal(str(pct)) / 100).to_integral_value(rounding=ROUND_FLOOR))
        amounts.append(amount)
        allocated += amount
    amounts.append(total - allocated)
    return amounts


class PartitionGenerator:
    """
    Seeded front-end to the partition functions.

    Two generators built with the same seed return identical sequences for
    identical calls.
    """

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = random.Random(seed)

    def bounded_integer(self, n: int, total: int, min_value: int, max_value: int) -> List[int]:
        return bounded_integer_partition(n, total, min_value, max_value, self._rng)

    def random_percentages(self, n: int, min_pct: float = 1.0, max_pct: float = 10.0) -> List[float]:
        return random_percentages(n, min_pct, max_pct, self._rng)

    def unique_arithmetic(self, n: int, common_difference: float = DEFAULT_COMMON_DIFFERENCE) -> List[float]:
        return unique_arithmetic_percentages(n, common_difference)
