"""
Dice operation executor.

Rolls a parsed DiceExpression and applies its operations in the order they
were written:
- Keep/drop highest or lowest (advantage, 4d6 drop lowest)
- Reroll listed values once (Great Weapon Fighting)
- Exploding dice (chain on newly added dice)
- Minimum die value

Every operation is recorded as an AppliedOperation so results can show what
was rolled before and after each step.
"""
import random
from typing import Callable, Iterable, List, Optional

from roll_engine.core.dice_parser import validate_operations
from roll_engine.core.errors import RollEngineError, RollEngineErrorKind
from roll_engine.core.models import (
    FLAT_DIE_SIDES,
    AppliedOperation,
    DiceExpression,
    DiceRoll,
    Operation,
    OperationType,
)


RandomSource = Callable[[int], int]


def roll_die(sides: int, random_source: Optional[RandomSource] = None) -> int:
    """Roll a single die with the given number of sides."""
    if sides < 1:
        raise ValueError(f"Invalid die: d{sides}")
    if sides == FLAT_DIE_SIDES:
        return 1
    if random_source is not None:
        return random_source(sides)
    return random.randint(1, sides)


class SequenceRandomSource:
    """
    Deterministic entropy for tests and replays.

    Returns the given values in order, one per die rolled. Running out of
    values is an error rather than a silent fallback to real randomness.
    """

    def __init__(self, values: Iterable[int]):
        self._values = list(values)
        self._position = 0

    def __call__(self, sides: int) -> int:
        if self._position >= len(self._values):
            raise RollEngineError(
                RollEngineErrorKind.RANDOM_SOURCE_EXHAUSTED,
                f"Forced dice sequence exhausted after {len(self._values)} rolls",
                {"values": self._values},
            )
        value = self._values[self._position]
        self._position += 1
        if value < 1 or value > sides:
            raise ValueError(f"Forced roll {value} is not a valid d{sides} result")
        return value

    @property
    def remaining(self) -> int:
        return len(self._values) - self._position


class DiceRoller:
    """Executes dice expressions against a random source."""

    def __init__(self, random_source: Optional[RandomSource] = None):
        self.random_source = random_source

    def roll_die(self, sides: int) -> int:
        return roll_die(sides, self.random_source)

    def roll(self, expression: DiceExpression) -> DiceRoll:
        """
        Roll a dice expression with all of its operations.

        Args:
            expression: Parsed dice expression

        Returns:
            DiceRoll with the kept dice, the initial dice and every applied
            operation

        Raises:
            RollEngineError: INVALID_OPERATIONS when the operations do not fit
                the dice; nothing is rolled in that case
        """
        errors = validate_operations(expression.operations, expression.count, expression.sides)
        if errors:
            raise RollEngineError(
                RollEngineErrorKind.INVALID_OPERATIONS,
                f"Invalid dice operations: {', '.join(errors)}",
                {"expression": str(expression), "errors": errors},
            )

        rolls = [self.roll_die(expression.sides) for _ in range(expression.count)]
        initial_rolls = list(rolls)

        applied: List[AppliedOperation] = []
        rerolled = False

        for operation in expression.operations:
            result = self._apply_operation(rolls, operation, expression.sides)
            rolls = result.final_rolls
            applied.append(result)
            if operation.type in (OperationType.REROLL, OperationType.EXPLODE) and result.affected_indices:
                rerolled = True

        return DiceRoll(
            rolls=rolls,
            sides=expression.sides,
            total=sum(rolls) + expression.modifier,
            operations=applied,
            rerolled=rerolled,
            critical=False,
            initial_rolls=initial_rolls,
            modifier=expression.modifier,
        )

    def _apply_operation(self, rolls: List[int], operation: Operation, sides: int) -> AppliedOperation:
        original = list(rolls)
        final = list(rolls)
        affected: List[int] = []
        n = operation.value if not isinstance(operation.value, tuple) else 0

        if operation.type in (OperationType.KEEP_HIGHEST, OperationType.DROP_HIGHEST):
            ranked = sorted(range(len(final)), key=lambda i: final[i], reverse=True)
        else:
            ranked = sorted(range(len(final)), key=lambda i: final[i])

        if operation.type == OperationType.KEEP_HIGHEST:
            affected = sorted(ranked[:n])
            final = [original[i] for i in affected]
            description = f"Kept {n} highest"

        elif operation.type == OperationType.KEEP_LOWEST:
            affected = sorted(ranked[:n])
            final = [original[i] for i in affected]
            description = f"Kept {n} lowest"

        elif operation.type == OperationType.DROP_HIGHEST:
            affected = sorted(ranked[:n])
            final = [v for i, v in enumerate(original) if i not in affected]
            description = f"Dropped {n} highest"

        elif operation.type == OperationType.DROP_LOWEST:
            affected = sorted(ranked[:n])
            final = [v for i, v in enumerate(original) if i not in affected]
            description = f"Dropped {n} lowest"

        elif operation.type == OperationType.REROLL:
            targets = set(operation.values)
            for i, value in enumerate(final):
                if value in targets:
                    final[i] = self.roll_die(sides)
                    affected.append(i)
            description = f"Rerolled dice showing {', '.join(str(v) for v in operation.values)}"

        elif operation.type == OperationType.EXPLODE:
            # New dice are checked too once appended, so a die can chain
            i = 0
            while i < len(final):
                if final[i] >= n:
                    final.append(self.roll_die(sides))
                    affected.append(len(final) - 1)
                i += 1
            description = f"Exploded dice on {n}+"

        elif operation.type == OperationType.MINIMUM:
            for i, value in enumerate(final):
                if value < n:
                    final[i] = n
                    affected.append(i)
            description = f"Set minimum die value to {n}"

        else:
            raise ValueError(f"Unknown dice operation: {operation.type}")

        return AppliedOperation(
            type=operation.type,
            original_rolls=original,
            final_rolls=final,
            affected_indices=affected,
            description=description,
        )
