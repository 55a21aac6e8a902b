"""
Dice notation parser.

Supports D&D 5e dice notation including:
- Basic: "1d20", "3d6", "2d8+3"
- Advantage/Disadvantage: "2d20kh1", "2d20kl1"
- Drop dice: "4d6dl1" (ability score generation)
- Rerolls: "2d6r1,2" (Great Weapon Fighting)
- Exploding: "1d6x6" (explode on 6s)
- Minimum: "2d6m3" (minimum 3 per die)
- Flat numbers: "5" (always rolls 5)
- Labeled multi-expressions: "attack:1d20+5,damage:1d8+3"

Operations are kept in the order they are written; the executor applies
them in that order.
"""
import re
from typing import List, Sequence

from roll_engine.core.errors import ParseError
from roll_engine.core.models import (
    CANONICAL_DIE_SIZES,
    DROP_OPERATIONS,
    FLAT_DIE_SIDES,
    KEEP_OPERATIONS,
    MAX_DICE_COUNT,
    DiceExpression,
    DiceParseResult,
    LabeledDiceExpression,
    MultiDiceExpression,
    MultiDiceParseResult,
    Operation,
    OperationType,
)


_DICE_PATTERN = re.compile(r"^(\d*)d(\d+)")
_NUMBER_PATTERN = re.compile(r"^[+-]?\d+$")
_SUFFIX_PATTERN = re.compile(
    r"(?P<modifier>[+-]\d+)"
    r"|r(?P<reroll>\d+(?:,\d+)*)"
    r"|(?P<op>kh|kl|dh|dl|x|m)(?P<value>\d+)"
)
_LABEL_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*):(.*)$", re.DOTALL)

# A comma belongs to a reroll list when the text before it ends in one
# ("2d6r1") and the text after it starts with a number that is not a die.
_REROLL_TAIL = re.compile(r"r\d+(?:,\d+)*$")
_REROLL_CONTINUATION = re.compile(r"^\d+(?![\dd])")

_OPERATION_CODES = {
    "kh": OperationType.KEEP_HIGHEST,
    "kl": OperationType.KEEP_LOWEST,
    "dh": OperationType.DROP_HIGHEST,
    "dl": OperationType.DROP_LOWEST,
    "x": OperationType.EXPLODE,
    "m": OperationType.MINIMUM,
}


def _normalize(text: str) -> str:
    return re.sub(r"\s+", "", text).lower()


# =============================================================================
# SINGLE EXPRESSION PARSER
# =============================================================================

def parse_dice_expression(text: str) -> DiceExpression:
    """
    Parse a dice expression string into structured data.

    Args:
        text: Dice expression like "3d6+2", "2d20kh1+5" or "7"

    Returns:
        DiceExpression with count, sides, modifier and ordered operations

    Raises:
        ParseError: If the text is empty, malformed, uses an unsupported die
            size or an out-of-range dice count
    """
    if text is None:
        raise ParseError("", "Empty expression")

    original = text.strip()
    normalized = _normalize(text)
    if not normalized:
        raise ParseError(text, "Empty expression")

    dice_match = _DICE_PATTERN.match(normalized)
    if not dice_match:
        if _NUMBER_PATTERN.match(normalized):
            # 1d1 always rolls 1, so value-1 as the modifier yields the literal
            value = int(normalized)
            return DiceExpression(
                count=1,
                sides=FLAT_DIE_SIDES,
                modifier=value - 1,
                operations=(),
                expression=original,
            )
        raise ParseError(text, "Invalid dice format - expected XdY or number")

    count = int(dice_match.group(1) or "1")
    sides = int(dice_match.group(2))

    if count <= 0 or count > MAX_DICE_COUNT:
        raise ParseError(text, f"Invalid dice count: {count} (must be 1-{MAX_DICE_COUNT})")

    if sides not in CANONICAL_DIE_SIZES:
        supported = ",".join(f"d{s}" for s in CANONICAL_DIE_SIZES)
        raise ParseError(text, f"Invalid die size: d{sides} (supported: {supported})")

    modifier, operations = _parse_suffix(text, normalized[dice_match.end():])

    return DiceExpression(
        count=count,
        sides=sides,
        modifier=modifier,
        operations=tuple(operations),
        expression=original,
    )


def _parse_suffix(text: str, remainder: str):
    """Read modifiers and operations after the XdY part, in written order."""
    modifier = 0
    operations: List[Operation] = []
    pos = 0

    while pos < len(remainder):
        match = _SUFFIX_PATTERN.match(remainder, pos)
        if not match:
            raise ParseError(text, f"Unrecognized notation '{remainder[pos:]}'")

        if match.group("modifier") is not None:
            modifier += int(match.group("modifier"))
        elif match.group("reroll") is not None:
            values = tuple(int(v) for v in match.group("reroll").split(","))
            operations.append(Operation(OperationType.REROLL, values))
        else:
            op_type = _OPERATION_CODES[match.group("op")]
            operations.append(Operation(op_type, int(match.group("value"))))

        pos = match.end()

    return modifier, operations


def try_parse_dice_expression(text: str) -> DiceParseResult:
    """Parse without raising; errors are reported in the result."""
    try:
        return DiceParseResult(valid=True, expression=parse_dice_expression(text))
    except ParseError as e:
        return DiceParseResult(valid=False, error=e.message)


# =============================================================================
# DICE OPERATION VALIDATION
# =============================================================================

def validate_operations(operations: Sequence[Operation], count: int, sides: int) -> List[str]:
    """
    Validate operations against dice count and die size.

    Args:
        operations: Operations to validate
        count: Number of dice rolled
        sides: Die size

    Returns:
        Human-readable error strings; empty when the operations are valid
    """
    errors: List[str] = []

    if sides == FLAT_DIE_SIDES and operations:
        errors.append("Flat numbers cannot have dice operations")
        return errors

    for op in operations:
        if op.type in KEEP_OPERATIONS:
            if op.value <= 0:
                errors.append("Keep value must be positive")
            elif op.value >= count:
                errors.append(f"Cannot keep {op.value} dice when only rolling {count}")

        elif op.type in DROP_OPERATIONS:
            if op.value <= 0:
                errors.append("Drop value must be positive")
            elif op.value >= count:
                errors.append(f"Cannot drop {op.value} dice when only rolling {count}")

        elif op.type == OperationType.REROLL:
            for value in op.values:
                if value < 1 or value > sides:
                    errors.append(f"Reroll value {value} outside die range 1-{sides}")

        elif op.type == OperationType.EXPLODE:
            if op.value < 1 or op.value > sides:
                errors.append(f"Explode value {op.value} outside die range 1-{sides}")
            elif op.value == 1:
                errors.append("Explode value 1 would explode every die")

        elif op.type == OperationType.MINIMUM:
            if op.value < 1 or op.value > sides:
                errors.append(f"Minimum value {op.value} outside die range 1-{sides}")

    types = {op.type for op in operations}

    if types & KEEP_OPERATIONS and types & DROP_OPERATIONS:
        errors.append("Cannot use both keep and drop operations in the same expression")

    if KEEP_OPERATIONS <= types:
        errors.append("Cannot keep both highest and lowest dice in the same expression")

    return errors


# =============================================================================
# MULTI-EXPRESSION PARSER
# =============================================================================

def parse_any_dice_expression(text: str) -> MultiDiceExpression:
    """
    Parse any dice expression - single or multiple, labeled or not.

    Supports: "1d20", "1d20,1d8", "attack:1d20+5,damage:1d8+3"

    Single expressions come back as a one-element MultiDiceExpression.

    Raises:
        ParseError: If the text is empty or any segment fails to parse
    """
    trimmed = (text or "").strip()
    if not trimmed:
        raise ParseError(text or "", "Empty expression")

    expressions = tuple(_parse_labeled_expression(part) for part in _split_segments(trimmed))

    return MultiDiceExpression(full_expression=trimmed, expressions=expressions)


def _split_segments(text: str) -> List[str]:
    """Split on top-level commas, keeping reroll value lists together."""
    segments: List[str] = []
    for part in text.split(","):
        part = part.strip()
        if (
            segments
            and _REROLL_TAIL.search(_normalize(segments[-1]))
            and _REROLL_CONTINUATION.match(_normalize(part))
        ):
            segments[-1] = f"{segments[-1]},{part}"
        else:
            segments.append(part)
    return segments


def _parse_labeled_expression(segment: str) -> LabeledDiceExpression:
    """Parse "label:expr" or a bare "expr"."""
    if not segment:
        raise ParseError(segment, "Empty expression")

    label_match = _LABEL_PATTERN.match(segment)
    if label_match:
        label = label_match.group(1)
        body = label_match.group(2).strip()
        if not body:
            raise ParseError(segment, f"Label '{label}' has no dice expression")
        return LabeledDiceExpression(expression=parse_dice_expression(body), label=label)

    if ":" in segment:
        raise ParseError(segment, "Invalid label - labels must start with a letter or underscore")

    return LabeledDiceExpression(expression=parse_dice_expression(segment))


def try_parse_any_dice_expression(text: str) -> MultiDiceParseResult:
    """Parse a multi-expression without raising."""
    try:
        return MultiDiceParseResult(valid=True, multi_expression=parse_any_dice_expression(text))
    except ParseError as e:
        return MultiDiceParseResult(valid=False, error=e.message)


def create_multi_dice_expression(expressions: Sequence[LabeledDiceExpression]) -> MultiDiceExpression:
    """Build a multi-expression from already-parsed parts."""
    if not expressions:
        raise ParseError("", "Empty expression")
    full = ",".join(e.to_notation() for e in expressions)
    return MultiDiceExpression(full_expression=full, expressions=tuple(expressions))


def is_multi_expression(text: str) -> bool:
    """True if the text parses to more than one sub-expression."""
    return len(_split_segments(text.strip())) > 1


def has_labels(text: str) -> bool:
    return ":" in text


def get_expression_labels(multi: MultiDiceExpression) -> List[str]:
    """Labels in order, with empty strings for unlabeled parts."""
    return [e.label or "" for e in multi.expressions]


# =============================================================================
# BUILDERS
# =============================================================================

def create_dice_expression(count: int, sides: int, modifier: int = 0) -> DiceExpression:
    """Create a simple expression like 2d6+3, validated like parsed text."""
    notation = f"{count}d{sides}" + (f"{modifier:+d}" if modifier else "")
    return parse_dice_expression(notation)


def create_advantage_expression(modifier: int = 0) -> DiceExpression:
    return parse_dice_expression("2d20kh1" + (f"{modifier:+d}" if modifier else ""))


def create_disadvantage_expression(modifier: int = 0) -> DiceExpression:
    return parse_dice_expression("2d20kl1" + (f"{modifier:+d}" if modifier else ""))


def create_ability_score_expression() -> DiceExpression:
    """4d6, drop the lowest."""
    return parse_dice_expression("4d6dl1")


def create_great_weapon_fighting_expression(count: int, sides: int) -> DiceExpression:
    """Reroll 1s and 2s once."""
    return parse_dice_expression(f"{count}d{sides}r1,2")


def create_attack_damage_expression(attack_bonus: int = 0, damage: str = "1d8") -> MultiDiceExpression:
    """Common "attack:1d20+N,damage:..." pair."""
    attack = "1d20" + (f"{attack_bonus:+d}" if attack_bonus else "")
    return parse_any_dice_expression(f"attack:{attack},damage:{damage}")


# =============================================================================
# INSPECTION
# =============================================================================

def has_advantage(expression: DiceExpression) -> bool:
    op = expression.find_operation(OperationType.KEEP_HIGHEST)
    return expression.count == 2 and expression.sides == 20 and op is not None and op.value == 1


def has_disadvantage(expression: DiceExpression) -> bool:
    op = expression.find_operation(OperationType.KEEP_LOWEST)
    return expression.count == 2 and expression.sides == 20 and op is not None and op.value == 1


def get_effective_dice_count(expression: DiceExpression) -> int:
    """Dice that count toward the total after keep/drop (explosions excluded)."""
    count = expression.count
    for op in expression.operations:
        if op.type in KEEP_OPERATIONS:
            count = min(count, op.value)
        elif op.type in DROP_OPERATIONS:
            count -= op.value
    return max(0, count)


def rewrite_for_advantage(expression: DiceExpression, advantage: bool) -> DiceExpression:
    """
    Turn a d20 expression into 2d20kh1 (or 2d20kl1), keeping its modifier.

    Args:
        expression: The d20 expression to rewrite
        advantage: True for advantage, False for disadvantage
    """
    if advantage:
        return create_advantage_expression(expression.modifier)
    return create_disadvantage_expression(expression.modifier)
