"""
Statistical estimates for dice expressions.

Used by pre-roll analysis to show a range and an average without rolling.

Accuracy notes:
- Keeping a single die (advantage, disadvantage, "4d6kh1") is exact: the
  expected maximum/minimum comes from P(max <= k) = F(k)^n.
- Keeping k > 1 dice uses a linear approximation that shifts the mean toward
  the kept extreme in proportion to k/n. It is intentionally approximate and
  UI previews rely on these numbers as they are.
- Exploding dice have no upper bound; `estimate_range` doubles the max as a
  deliberate overestimate.
"""
from typing import Dict, NamedTuple

from roll_engine.core.models import (
    DROP_OPERATIONS,
    KEEP_OPERATIONS,
    DiceExpression,
    OperationType,
)


class DiceRange(NamedTuple):
    min: int
    max: int


def _face_distribution(expression: DiceExpression) -> Dict[int, float]:
    """
    Distribution of one die after the per-die operations (reroll, minimum).

    Per-die operations are folded in written order and assumed to apply to
    every die, before any keep/drop.
    """
    sides = expression.sides
    dist = {face: 1.0 / sides for face in range(1, sides + 1)}

    for op in expression.operations:
        if op.type == OperationType.REROLL:
            targets = set(op.values)
            rerolled_mass = sum(p for face, p in dist.items() if face in targets)
            dist = {
                face: (0.0 if face in targets else p) + rerolled_mass / sides
                for face, p in dist.items()
            }
        elif op.type == OperationType.MINIMUM:
            floor = op.value
            raised = sum(p for face, p in dist.items() if face < floor)
            dist = {
                face: (0.0 if face < floor else p) + (raised if face == floor else 0.0)
                for face, p in dist.items()
            }

    return dist


def _mean(dist: Dict[int, float]) -> float:
    return sum(face * p for face, p in dist.items())


def _expected_single_kept(dist: Dict[int, float], n: int, highest: bool) -> float:
    """Exact expected value of the max (or min) of n iid dice."""
    faces = sorted(dist)
    total = 0.0
    cdf = 0.0
    if highest:
        # P(max = k) = F(k)^n - F(k-1)^n
        for face in faces:
            previous = cdf
            cdf += dist[face]
            total += face * (cdf ** n - previous ** n)
    else:
        # P(min = k) = S(k)^n - S(k+1)^n with S(k) = P(X >= k)
        survival = 1.0
        for face in faces:
            after = survival - dist[face]
            total += face * (survival ** n - max(after, 0.0) ** n)
            survival = after
    return total


def _expected_keep_many(dist: Dict[int, float], sides: int, n: int, keep: int, highest: bool) -> float:
    """Approximate expected sum of the k highest (or lowest) of n dice."""
    die_average = _mean(dist)
    if keep >= n:
        return n * die_average
    if highest:
        shift = (keep / n) * (sides - die_average)
        return keep * (die_average + shift * 0.5)
    shift = (keep / n) * (die_average - 1)
    return keep * (die_average - shift * 0.5)


def _keep_rule(expression: DiceExpression):
    """Express keep/drop as (kept count, keep highest?) or None."""
    kept = expression.count
    highest = None
    for op in expression.operations:
        if op.type == OperationType.KEEP_HIGHEST:
            kept, highest = min(kept, op.value), True
        elif op.type == OperationType.KEEP_LOWEST:
            kept, highest = min(kept, op.value), False
        elif op.type == OperationType.DROP_LOWEST:
            kept, highest = kept - op.value, True
        elif op.type == OperationType.DROP_HIGHEST:
            kept, highest = kept - op.value, False
    if highest is None:
        return None
    return kept, highest


def estimate_average(expression: DiceExpression) -> float:
    """
    Expected total of a dice expression, modifier included.

    Plain NdS gives N*(S+1)/2 + modifier. Keep/drop of a single die uses
    exact order statistics; keeping more than one die is approximate (see
    module notes). Minimum and reroll operations adjust the per-die average.
    """
    if expression.is_flat:
        return float(expression.flat_value)

    n = expression.count
    sides = expression.sides
    dist = _face_distribution(expression)

    rule = _keep_rule(expression)
    if rule is not None and 0 < rule[0] < n:
        kept, highest = rule
        if kept == 1:
            return _expected_single_kept(dist, n, highest) + expression.modifier
        return _expected_keep_many(dist, sides, n, kept, highest) + expression.modifier

    per_die = _mean(dist)

    explode = expression.find_operation(OperationType.EXPLODE)
    if explode is not None and explode.value > 1:
        # Each trigger adds a fresh die that can trigger again (geometric chain)
        trigger = (sides - explode.value + 1) / sides
        first_trigger = sum(p for face, p in dist.items() if face >= explode.value)
        per_die += first_trigger / (1 - trigger) * (sides + 1) / 2

    return n * per_die + expression.modifier


def estimate_range(expression: DiceExpression) -> DiceRange:
    """
    Minimum and maximum possible totals.

    Bounds scale to the number of kept dice. A minimum operation raises the
    per-die floor. Exploding dice double the max bound as an overestimate.
    """
    if expression.is_flat:
        return DiceRange(expression.flat_value, expression.flat_value)

    effective = expression.count
    rule = _keep_rule(expression)
    if rule is not None:
        effective = max(0, rule[0])

    die_min = 1
    for op in expression.operations:
        if op.type == OperationType.MINIMUM:
            die_min = max(die_min, op.value)
        elif op.type == OperationType.REROLL:
            # A reroll after a minimum can land below it again
            die_min = 1

    low = effective * die_min
    high = effective * expression.sides

    if expression.find_operation(OperationType.EXPLODE) is not None:
        high *= 2

    return DiceRange(low + expression.modifier, high + expression.modifier)


def has_keep_or_drop(expression: DiceExpression) -> bool:
    return any(op.type in KEEP_OPERATIONS | DROP_OPERATIONS for op in expression.operations)
