"""
Roll system data model.

Value objects shared by the parser, the dice executor, the modifier
resolvers and the roll engine. Everything here is created per roll and
treated as immutable once built.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from roll_engine.core.errors import ValidationError


CANONICAL_DIE_SIZES = (2, 3, 4, 6, 8, 10, 12, 20, 100)
MAX_DICE_COUNT = 100
FLAT_DIE_SIDES = 1  # Bare numbers are stored as 1d1 plus a modifier


class RollType(str, Enum):
    """Kinds of rolls the engine understands."""
    ATTACK = "attack"
    DAMAGE = "damage"
    SKILL = "skill"
    SAVE = "save"
    ABILITY = "ability"
    INITIATIVE = "initiative"
    CONCENTRATION = "concentration"
    DEATH_SAVE = "death_save"
    SPELL_SAVE = "spell_save"
    SPELL_ATTACK = "spell_attack"
    HEALING = "healing"
    RAW = "raw"


CRITICAL_HIT_ROLL_TYPES = frozenset({RollType.ATTACK, RollType.SPELL_ATTACK})
CRITICAL_FAILURE_ROLL_TYPES = frozenset({
    RollType.ATTACK, RollType.SPELL_ATTACK, RollType.SAVE, RollType.DEATH_SAVE,
})
D20_TEST_ROLL_TYPES = frozenset({
    RollType.ATTACK, RollType.SPELL_ATTACK, RollType.SKILL, RollType.SAVE,
    RollType.ABILITY, RollType.INITIATIVE, RollType.CONCENTRATION,
    RollType.DEATH_SAVE,
})


class SourceType(str, Enum):
    """What produced the roll."""
    WEAPON = "weapon"
    SPELL = "spell"
    SKILL = "skill"
    SAVE = "save"
    ABILITY = "ability"
    CUSTOM = "custom"


class OperationType(str, Enum):
    """Dice operations, written as suffixes in dice notation."""
    KEEP_HIGHEST = "keep_highest"
    KEEP_LOWEST = "keep_lowest"
    DROP_HIGHEST = "drop_highest"
    DROP_LOWEST = "drop_lowest"
    REROLL = "reroll"
    EXPLODE = "explode"
    MINIMUM = "minimum"


OPERATION_SUFFIXES = {
    OperationType.KEEP_HIGHEST: "kh",
    OperationType.KEEP_LOWEST: "kl",
    OperationType.DROP_HIGHEST: "dh",
    OperationType.DROP_LOWEST: "dl",
    OperationType.REROLL: "r",
    OperationType.EXPLODE: "x",
    OperationType.MINIMUM: "m",
}

KEEP_OPERATIONS = frozenset({OperationType.KEEP_HIGHEST, OperationType.KEEP_LOWEST})
DROP_OPERATIONS = frozenset({OperationType.DROP_HIGHEST, OperationType.DROP_LOWEST})


class ModifierSource(str, Enum):
    """Where a roll modifier comes from."""
    ABILITY_SCORE = "ability_score"
    PROFICIENCY = "proficiency"
    EXPERTISE = "expertise"
    SPELL = "spell"
    ITEM = "item"
    CLASS_FEATURE = "class_feature"
    CONDITION = "condition"
    CUSTOM = "custom"


class ModifierType(str, Enum):
    """How a roll modifier changes the roll."""
    FLAT_BONUS = "flat_bonus"          # +2
    DICE_BONUS = "dice_bonus"          # +1d4
    MULTIPLIER = "multiplier"          # Vulnerability (x2)
    DIVIDER = "divider"                # Resistance (/2)
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"
    CRITICAL_RANGE = "critical_range"  # Crit on 19-20


INTEGER_MODIFIER_TYPES = frozenset({
    ModifierType.FLAT_BONUS,
    ModifierType.MULTIPLIER,
    ModifierType.DIVIDER,
    ModifierType.CRITICAL_RANGE,
})


class ApplicationTiming(str, Enum):
    """When a modifier is applied during roll resolution."""
    BEFORE_ROLL = "before_roll"    # Advantage, Bless, ability scores
    ON_DAMAGE = "on_damage"        # Sneak Attack, resistance
    ON_CRITICAL = "on_critical"    # Brutal Critical extra dice


class BreakdownType(str, Enum):
    """Kinds of lines in a roll breakdown."""
    DIE = "die"
    MODIFIER = "modifier"
    CRITICAL = "critical"


# =============================================================================
# DICE EXPRESSIONS
# =============================================================================

@dataclass(frozen=True)
class Operation:
    """One dice operation; `value` is a count, threshold, or reroll value set."""
    type: OperationType
    value: Union[int, Tuple[int, ...]]

    @property
    def values(self) -> Tuple[int, ...]:
        """The operation value as a tuple (reroll sets have several)."""
        if isinstance(self.value, tuple):
            return self.value
        return (self.value,)

    def to_notation(self) -> str:
        suffix = OPERATION_SUFFIXES[self.type]
        return suffix + ",".join(str(v) for v in self.values)


@dataclass(frozen=True)
class DiceExpression:
    """
    A single die-group: roll `count` dice of `sides`, apply `operations`
    in order, then add `modifier`.

    Bare numbers ("5") are represented as 1d1 with modifier value-1 so that
    flat bonuses flow through the same pipeline as real dice.
    """
    count: int
    sides: int
    modifier: int = 0
    operations: Tuple[Operation, ...] = ()
    expression: str = ""

    @property
    def is_flat(self) -> bool:
        """True for bare-number expressions that always roll a fixed value."""
        return self.sides == FLAT_DIE_SIDES

    @property
    def flat_value(self) -> int:
        return self.count + self.modifier

    def to_notation(self) -> str:
        """Serialize back to dice notation (operations first, then modifier)."""
        if self.is_flat:
            return str(self.flat_value)
        ops = "".join(op.to_notation() for op in self.operations)
        mod = f"{self.modifier:+d}" if self.modifier else ""
        return f"{self.count}d{self.sides}{ops}{mod}"

    def with_count(self, count: int) -> "DiceExpression":
        """Copy with a different dice count (used for critical doubling)."""
        return DiceExpression(count, self.sides, self.modifier, self.operations)

    def without_modifier(self) -> "DiceExpression":
        return DiceExpression(self.count, self.sides, 0, self.operations)

    def find_operation(self, *types: OperationType) -> Optional[Operation]:
        for op in self.operations:
            if op.type in types:
                return op
        return None

    def __str__(self) -> str:
        return self.expression or self.to_notation()


@dataclass(frozen=True)
class LabeledDiceExpression:
    """A dice expression with an optional `label:` prefix."""
    expression: DiceExpression
    label: Optional[str] = None

    def to_notation(self) -> str:
        prefix = f"{self.label}:" if self.label else ""
        return prefix + self.expression.to_notation()


@dataclass(frozen=True)
class MultiDiceExpression:
    """
    The parsed form of any notation string.

    A plain "1d20" is a one-element sequence; there is no separate shape
    for single expressions.
    """
    full_expression: str
    expressions: Tuple[LabeledDiceExpression, ...]

    def to_notation(self) -> str:
        return ",".join(e.to_notation() for e in self.expressions)


@dataclass
class DiceParseResult:
    """Non-throwing parse outcome."""
    valid: bool
    expression: Optional[DiceExpression] = None
    error: Optional[str] = None


@dataclass
class MultiDiceParseResult:
    """Non-throwing multi-expression parse outcome."""
    valid: bool
    multi_expression: Optional[MultiDiceExpression] = None
    error: Optional[str] = None


# =============================================================================
# ROLL CONTEXT
# =============================================================================

@dataclass(frozen=True)
class CharacterInfo:
    """Character stats visible to modifier resolvers."""
    id: str
    level: int = 1
    ability_scores: Mapping[str, int] = field(default_factory=dict)
    proficiency_bonus: Optional[int] = None
    class_name: str = ""
    subclass: str = ""
    features: FrozenSet[str] = frozenset()
    skill_proficiencies: FrozenSet[str] = frozenset()
    saving_throw_proficiencies: FrozenSet[str] = frozenset()
    expertise: FrozenSet[str] = frozenset()
    weapon_proficiencies: FrozenSet[str] = frozenset()
    equipped_items: FrozenSet[str] = frozenset()

    @property
    def effective_proficiency_bonus(self) -> int:
        """Explicit bonus, or the level-scaled default (+2 at 1st, +6 at 17th)."""
        if self.proficiency_bonus is not None:
            return self.proficiency_bonus
        return math.ceil(self.level / 4) + 1


@dataclass(frozen=True)
class RollSource:
    """The weapon, spell, skill, save or ability being rolled."""
    type: SourceType
    name: str
    tags: FrozenSet[str] = frozenset()
    properties: Mapping[str, Any] = field(default_factory=dict)
    source_id: Optional[str] = None


@dataclass(frozen=True)
class Environment:
    """Situational flags at the moment of the roll."""
    advantage: bool = False
    disadvantage: bool = False
    hidden: bool = False
    blessed: bool = False
    inspired: bool = False
    guidance: bool = False
    flanking: bool = False
    ally_adjacent: bool = False
    target_prone: bool = False
    cover: Optional[str] = None  # "half" or "three_quarters"
    conditions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TargetInfo:
    """What the roll is made against."""
    ac: Optional[int] = None
    save_bonus: Optional[int] = None
    conditions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RollContext:
    """Immutable input to modifier resolution."""
    character: CharacterInfo
    source: RollSource
    environment: Environment = field(default_factory=Environment)
    target: Optional[TargetInfo] = None


# =============================================================================
# MODIFIERS AND DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class RollModifier:
    """
    Any adjustment to a roll.

    `stacks=False` modifiers compete with others of the same (source, type):
    only the highest value survives. `roll_types` limits the roll kinds the
    modifier touches; empty means every kind.
    """
    id: str
    name: str
    source: ModifierSource
    type: ModifierType
    value: Union[int, DiceExpression] = 0
    application: ApplicationTiming = ApplicationTiming.BEFORE_ROLL
    stacks: bool = False
    priority: int = 50
    description: str = ""
    condition: Optional[Callable[[RollContext], bool]] = field(default=None, compare=False)
    roll_types: FrozenSet[RollType] = frozenset()

    def __post_init__(self):
        if self.type == ModifierType.DICE_BONUS:
            if not isinstance(self.value, DiceExpression):
                raise ValidationError(
                    "value",
                    f"Modifier '{self.id}' is a dice bonus and needs dice notation, got {self.value!r}",
                    self.value,
                )
        elif self.type in INTEGER_MODIFIER_TYPES:
            if isinstance(self.value, bool) or not isinstance(self.value, int):
                raise ValidationError(
                    "value",
                    f"Modifier '{self.id}' of type {self.type.value} needs an integer value, got {self.value!r}",
                    self.value,
                )
            if self.type in (ModifierType.MULTIPLIER, ModifierType.DIVIDER) and self.value < 1:
                raise ValidationError(
                    "value",
                    f"Modifier '{self.id}' of type {self.type.value} needs a value of at least 1",
                    self.value,
                )

    @property
    def is_dice(self) -> bool:
        return isinstance(self.value, DiceExpression)

    @property
    def display_value(self) -> str:
        if isinstance(self.value, DiceExpression):
            return self.value.to_notation()
        if self.type == ModifierType.MULTIPLIER:
            return f"x{self.value}"
        if self.type == ModifierType.DIVIDER:
            return f"/{self.value}"
        return f"{self.value:+d}"

    def applies_to(self, roll_type: RollType) -> bool:
        return not self.roll_types or roll_type in self.roll_types


@dataclass(frozen=True)
class RollDefinition:
    """
    A request to roll: what kind, against what context, using which dice.

    `critical_hit` marks a damage roll made for an attack that was already
    a critical hit.
    """
    id: str
    type: RollType
    name: str
    base_expression: MultiDiceExpression
    context: RollContext
    modifiers: Tuple[RollModifier, ...] = ()
    critical_hit: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "expression": self.base_expression.full_expression,
            "source": self.context.source.name,
            "character_id": self.context.character.id,
            "critical_hit": self.critical_hit,
        }


# =============================================================================
# EXECUTION RECORDS
# =============================================================================

@dataclass
class AppliedOperation:
    """What one dice operation did to the roll sequence."""
    type: OperationType
    original_rolls: List[int]
    final_rolls: List[int]
    affected_indices: List[int]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "original_rolls": list(self.original_rolls),
            "final_rolls": list(self.final_rolls),
            "affected_indices": list(self.affected_indices),
            "description": self.description,
        }


@dataclass
class DiceRoll:
    """Raw outcome of rolling one dice expression."""
    rolls: List[int]
    sides: int
    total: int
    operations: List[AppliedOperation] = field(default_factory=list)
    rerolled: bool = False
    critical: bool = False
    initial_rolls: List[int] = field(default_factory=list)
    modifier: int = 0

    @property
    def dice_total(self) -> int:
        """Sum of the kept dice, without the expression modifier."""
        return sum(self.rolls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rolls": list(self.rolls),
            "initial_rolls": list(self.initial_rolls),
            "sides": self.sides,
            "total": self.total,
            "modifier": self.modifier,
            "operations": [op.to_dict() for op in self.operations],
            "rerolled": self.rerolled,
            "critical": self.critical,
        }


@dataclass
class RollBreakdown:
    """One visible line of a roll result."""
    type: BreakdownType
    label: str
    value: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "label": self.label,
            "value": self.value,
            "details": dict(self.details),
        }


@dataclass
class RollMetadata:
    type: RollType
    definition: RollDefinition
    modifiers_applied: List[str]
    conditions_active: List[str]
    timestamp: float
    roll_id: str
    execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "definition": self.definition.summary(),
            "modifiers_applied": list(self.modifiers_applied),
            "conditions_active": list(self.conditions_active),
            "timestamp": self.timestamp,
            "roll_id": self.roll_id,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class LabeledRollResult:
    label: str
    result: "RollResult"

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "result": self.result.to_dict()}


@dataclass
class RollResult:
    """Final outcome of executing a roll definition."""
    total: int
    breakdown: List[RollBreakdown]
    critical_success: bool
    critical_failure: bool
    metadata: RollMetadata
    success: Optional[bool] = None
    target_number: Optional[int] = None
    multi_results: List[LabeledRollResult] = field(default_factory=list)
    dice: List[DiceRoll] = field(default_factory=list)

    def get(self, label: str) -> Optional["RollResult"]:
        """Sub-result for a labeled expression, if present."""
        for item in self.multi_results:
            if item.label == label:
                return item.result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "breakdown": [line.to_dict() for line in self.breakdown],
            "critical_success": self.critical_success,
            "critical_failure": self.critical_failure,
            "success": self.success,
            "target_number": self.target_number,
            "multi_results": [item.to_dict() for item in self.multi_results],
            "dice": [roll.to_dict() for roll in self.dice],
            "metadata": self.metadata.to_dict(),
        }


# =============================================================================
# PRE-ROLL ANALYSIS
# =============================================================================

@dataclass
class DicePreview:
    label: str
    expression: str
    source: str
    critical_affected: bool
    category: str  # base, bonus, critical, conditional


@dataclass
class ModifierPreview:
    label: str
    value: str
    source: str
    timing: ApplicationTiming
    category: str  # ability, proficiency, item, spell, condition
    conditional: bool = False


@dataclass
class ConditionPreview:
    label: str
    description: str
    active: bool
    type: str  # advantage, disadvantage, bonus, penalty, special
    icon: Optional[str] = None


@dataclass
class EstimatedRange:
    min: int
    max: int
    average: float


@dataclass
class PreRollInfo:
    """Non-randomized preview of a roll."""
    dice: List[DicePreview]
    modifiers: List[ModifierPreview]
    conditions: List[ConditionPreview]
    estimated_range: EstimatedRange
    critical_range: List[int]
    critical_failure_range: List[int]
    notes: List[str]
    breakdown: List[RollBreakdown] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dice": [vars(d).copy() for d in self.dice],
            "modifiers": [
                {**vars(m), "timing": m.timing.value} for m in self.modifiers
            ],
            "conditions": [vars(c).copy() for c in self.conditions],
            "estimated_range": vars(self.estimated_range).copy(),
            "critical_range": list(self.critical_range),
            "critical_failure_range": list(self.critical_failure_range),
            "notes": list(self.notes),
            "breakdown": [line.to_dict() for line in self.breakdown],
        }
