"""
Unified Roll Engine.

Turns a RollDefinition into either a pre-roll preview (no randomness) or a
fully resolved RollResult:

    gather modifiers -> advantage rewrite (d20 only) -> roll each labeled
    sub-expression -> critical check -> critical damage -> apply modifiers
    -> breakdown and total

Every number that contributes to a total shows up as its own breakdown line:
the dice, the expression's own modifier ("Bonus"), each external modifier,
and any critical dice.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from roll_engine.core.dice import DiceRoller
from roll_engine.core.dice_parser import get_effective_dice_count, parse_dice_expression, rewrite_for_advantage
from roll_engine.core.errors import ParseError, RollEngineError, RollEngineErrorKind
from roll_engine.core.modifier_registry import ModifierRegistry
from roll_engine.core.models import (
    CRITICAL_FAILURE_ROLL_TYPES,
    CRITICAL_HIT_ROLL_TYPES,
    D20_TEST_ROLL_TYPES,
    ApplicationTiming,
    BreakdownType,
    ConditionPreview,
    DiceExpression,
    DicePreview,
    DiceRoll,
    EstimatedRange,
    LabeledDiceExpression,
    LabeledRollResult,
    ModifierPreview,
    ModifierSource,
    ModifierType,
    MultiDiceExpression,
    OperationType,
    PreRollInfo,
    RollBreakdown,
    RollContext,
    RollDefinition,
    RollMetadata,
    RollModifier,
    RollResult,
    RollType,
)
from roll_engine.core.resolvers import Resolver
from roll_engine.core.rules_config import (
    IMPLEMENTED_STRATEGIES,
    AffectedDice,
    RollEngineConfig,
)
from roll_engine.core.statistics import estimate_average, estimate_range, has_keep_or_drop


logger = logging.getLogger("roll_engine.engine")

CANCEL_NOTE = "Advantage and disadvantage cancel out - rolling normally"

# Checked in order, first match wins
LABEL_ROLL_TYPES = (
    ("attack", RollType.ATTACK),
    ("damage", RollType.DAMAGE),
    ("heal", RollType.HEALING),
    ("save", RollType.SAVE),
)

MODIFIER_CATEGORIES = {
    ModifierSource.ABILITY_SCORE: "ability",
    ModifierSource.PROFICIENCY: "proficiency",
    ModifierSource.EXPERTISE: "proficiency",
    ModifierSource.ITEM: "item",
    ModifierSource.SPELL: "spell",
}

PRE_ROLL_MODIFIER_TYPES = frozenset({
    ModifierType.ADVANTAGE,
    ModifierType.DISADVANTAGE,
    ModifierType.CRITICAL_RANGE,
})


def infer_roll_type(label: Optional[str]) -> Optional[RollType]:
    """Roll type implied by a sub-expression label ("attack", "fire_damage", ...)."""
    if not label:
        return None
    lower = label.lower()
    for needle, roll_type in LABEL_ROLL_TYPES:
        if needle in lower:
            return roll_type
    return None


def label_category(label: Optional[str]) -> str:
    """Preview category for a labeled sub-expression."""
    if not label:
        return "base"
    lower = label.lower()
    if "bonus" in lower or "modifier" in lower:
        return "bonus"
    if "crit" in lower:
        return "critical"
    if "condition" in lower or "situational" in lower:
        return "conditional"
    return "base"


def _modifier_strength(modifier: RollModifier) -> float:
    """Comparable size of a modifier; a lower critical threshold is stronger."""
    if isinstance(modifier.value, DiceExpression):
        return estimate_average(modifier.value)
    if modifier.type == ModifierType.CRITICAL_RANGE:
        return -modifier.value
    return modifier.value


def sort_and_deduplicate_modifiers(modifiers: Iterable[RollModifier]) -> List[RollModifier]:
    """
    Sort by priority (lower first) and apply stacking rules.

    Non-stacking modifiers compete within their (source, type) group and only
    the strongest survives, in the slot of the first one seen. Stacking
    modifiers are all kept.
    """
    ordered = sorted(modifiers, key=lambda m: m.priority)
    result: List[RollModifier] = []
    slots: Dict[Tuple[ModifierSource, ModifierType], int] = {}

    for modifier in ordered:
        if modifier.stacks:
            result.append(modifier)
            continue
        key = (modifier.source, modifier.type)
        if key not in slots:
            slots[key] = len(result)
            result.append(modifier)
        elif _modifier_strength(modifier) > _modifier_strength(result[slots[key]]):
            result[slots[key]] = modifier

    return result


def _active_conditions(context: RollContext) -> List[str]:
    env = context.environment
    flags = ("advantage", "disadvantage", "hidden", "blessed", "inspired", "guidance", "flanking")
    conditions = [flag for flag in flags if getattr(env, flag)]
    if env.cover:
        conditions.append(f"cover_{env.cover}")
    conditions.extend(env.conditions)
    return conditions


class RollEngine:
    """
    Executes roll definitions against a modifier registry and a rule config.

    Long-lived state is limited to the registry, the resolver set and the
    configuration, all changed only through the methods below.
    """

    def __init__(
        self,
        config: Optional[RollEngineConfig] = None,
        registry: Optional[ModifierRegistry] = None,
        resolvers: Optional[Dict[str, Resolver]] = None,
    ):
        self.registry = registry if registry is not None else ModifierRegistry()
        self._resolvers: Dict[str, Resolver] = dict(resolvers or {})
        self.config: RollEngineConfig = None
        self.configure(config or RollEngineConfig())

    def configure(self, config: RollEngineConfig) -> None:
        """
        Replace the engine configuration.

        Raises:
            RollEngineError: UNSUPPORTED_STRATEGY for critical damage
                strategies that are declared but not implemented
            ParseError: if `additional_dice` is not valid notation
        """
        strategy = config.critical_rules.damage_strategy
        if strategy not in IMPLEMENTED_STRATEGIES:
            raise RollEngineError(
                RollEngineErrorKind.UNSUPPORTED_STRATEGY,
                f"Critical damage strategy '{strategy.value}' is not implemented",
                {"strategy": strategy.value},
            )
        additional_dice = None
        if config.critical_rules.additional_dice:
            additional_dice = parse_dice_expression(config.critical_rules.additional_dice)
        self._additional_dice = additional_dice
        self.config = config
        self._roller = DiceRoller(config.random_source)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register_character_modifiers(self, character_id: str, modifiers: Iterable[RollModifier]) -> None:
        self.registry.register_character(character_id, modifiers)

    def register_item_modifiers(self, item_id: str, modifiers: Iterable[RollModifier]) -> None:
        self.registry.register_item(item_id, modifiers)

    def add_temporary_modifiers(self, modifiers: Iterable[RollModifier]) -> None:
        """Add short-lived modifiers such as spell effects."""
        self.registry.add_temporary(modifiers)

    def clear_temporary_modifiers(self) -> None:
        self.registry.clear_temporary()

    def register_resolver(self, name: str, resolver: Resolver) -> None:
        self._resolvers[name] = resolver

    def unregister_resolver(self, name: str) -> None:
        self._resolvers.pop(name, None)

    @property
    def resolver_names(self) -> List[str]:
        return list(self._resolvers)

    # =========================================================================
    # MODIFIER GATHERING
    # =========================================================================

    def gather_modifiers(self, definition: RollDefinition) -> List[RollModifier]:
        """Registered, definition and resolver modifiers that apply to this roll."""
        context = definition.context
        candidates = self.registry.candidates(context)
        candidates.extend(definition.modifiers)
        for resolver in self._resolvers.values():
            candidates.extend(resolver(context))

        applicable = []
        for modifier in candidates:
            if not modifier.applies_to(definition.type):
                continue
            if modifier.application == ApplicationTiming.ON_DAMAGE and definition.type != RollType.DAMAGE:
                continue
            if modifier.condition is not None and not modifier.condition(context):
                continue
            applicable.append(modifier)

        return sort_and_deduplicate_modifiers(applicable)

    def _advantage_state(self, context: RollContext, modifiers: List[RollModifier]) -> Tuple[bool, bool]:
        env = context.environment
        advantage = env.advantage or any(m.type == ModifierType.ADVANTAGE for m in modifiers)
        disadvantage = env.disadvantage or any(m.type == ModifierType.DISADVANTAGE for m in modifiers)
        return advantage, disadvantage

    def _apply_pre_roll(
        self,
        expression: DiceExpression,
        context: RollContext,
        modifiers: List[RollModifier],
    ) -> Tuple[DiceExpression, Optional[str]]:
        """Rewrite a d20 expression for net advantage or disadvantage."""
        if expression.sides != 20:
            return expression, None
        advantage, disadvantage = self._advantage_state(context, modifiers)
        if advantage and disadvantage:
            return expression, CANCEL_NOTE
        if advantage or disadvantage:
            return rewrite_for_advantage(expression, advantage), None
        return expression, None

    def critical_range(self, roll_type: RollType, modifiers: List[RollModifier]) -> List[int]:
        """Natural rolls that crit for this roll type; empty when it cannot crit."""
        if roll_type not in CRITICAL_HIT_ROLL_TYPES:
            return []
        faces: Set[int] = set(self.config.critical_rules.range)
        for modifier in modifiers:
            if modifier.type == ModifierType.CRITICAL_RANGE:
                faces.update(range(int(modifier.value), 21))
        return sorted(faces)

    def critical_failure_range(self, roll_type: RollType) -> List[int]:
        if roll_type not in CRITICAL_FAILURE_ROLL_TYPES:
            return []
        return sorted(self.config.critical_rules.failure_range)

    # =========================================================================
    # PRE-ROLL ANALYSIS
    # =========================================================================

    async def analyze_roll(self, definition: RollDefinition) -> PreRollInfo:
        """
        Preview a roll without rolling anything.

        Raises:
            RollEngineError: ANALYSIS_ERROR wrapping any unexpected failure
        """
        started = time.perf_counter()
        try:
            return self.analyze_roll_sync(definition)
        except (ParseError, RollEngineError):
            raise
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(f"Pre-roll analysis failed for {definition.name}: {e}")
            raise RollEngineError(
                RollEngineErrorKind.ANALYSIS_ERROR,
                f"Pre-roll analysis failed: {e}",
                {"definition": definition, "elapsed_ms": round(elapsed_ms, 3)},
                cause=e,
            ) from e

    def analyze_roll_sync(self, definition: RollDefinition) -> PreRollInfo:
        expressions = definition.base_expression.expressions
        dice: List[DicePreview] = []
        previews: Dict[str, ModifierPreview] = {}
        notes: List[str] = []
        breakdown: List[RollBreakdown] = []
        crit_faces: Set[int] = set()
        failure_faces: Set[int] = set()
        total_min = total_max = 0
        total_average = 0.0
        approximate = False
        exploding = False
        conditional = set()
        all_modifiers: List[RollModifier] = []

        for index, labeled in enumerate(expressions):
            sub = self._sub_definition(definition, labeled, critical_hit=definition.critical_hit)
            modifiers = self.gather_modifiers(sub)
            all_modifiers.extend(modifiers)
            expression, note = self._apply_pre_roll(labeled.expression, sub.context, modifiers)
            if note and note not in notes:
                notes.append(note)

            if labeled.label:
                label = labeled.label[0].upper() + labeled.label[1:]
            elif len(expressions) == 1:
                label = f"Base {definition.name}"
            else:
                label = f"Expression {index + 1}"

            critical_damage = sub.type == RollType.DAMAGE
            dice.append(DicePreview(
                label=label,
                expression=expression.to_notation(),
                source=definition.context.source.name,
                critical_affected=critical_damage,
                category=label_category(labeled.label),
            ))

            if expression.sides == 20:
                crit_faces.update(self.critical_range(sub.type, modifiers))
                failure_faces.update(self.critical_failure_range(sub.type))

            low, high = estimate_range(expression)
            average = estimate_average(expression)
            if expression.is_flat:
                breakdown.append(RollBreakdown(BreakdownType.MODIFIER, label, expression.flat_value, {"source": "Expression"}))
            else:
                breakdown.append(RollBreakdown(
                    BreakdownType.DIE,
                    label,
                    round(average - expression.modifier),
                    {"expression": expression.to_notation(), "min": low - expression.modifier,
                     "max": high - expression.modifier, "preview": True},
                ))
                if expression.modifier:
                    breakdown.append(RollBreakdown(BreakdownType.MODIFIER, "Bonus", expression.modifier, {"source": "Expression"}))

            if has_keep_or_drop(expression) and get_effective_dice_count(expression) > 1:
                approximate = True
            if expression.find_operation(OperationType.EXPLODE) is not None:
                exploding = True

            for modifier in modifiers:
                if modifier.condition is not None:
                    conditional.add(modifier.id)
                if modifier.application == ApplicationTiming.ON_CRITICAL:
                    continue
                if modifier.type == ModifierType.FLAT_BONUS:
                    low += modifier.value
                    high += modifier.value
                    average += modifier.value
                    breakdown.append(RollBreakdown(BreakdownType.MODIFIER, modifier.name, modifier.value,
                                                   {"source": modifier.source.value, "id": modifier.id}))
                elif modifier.type == ModifierType.DICE_BONUS:
                    bonus_low, bonus_high = estimate_range(modifier.value)
                    bonus_average = estimate_average(modifier.value)
                    low += bonus_low
                    high += bonus_high
                    average += bonus_average
                    breakdown.append(RollBreakdown(BreakdownType.MODIFIER, modifier.name, round(bonus_average),
                                                   {"source": modifier.source.value, "id": modifier.id,
                                                    "expression": modifier.value.to_notation(), "preview": True}))
                elif modifier.type == ModifierType.MULTIPLIER:
                    low, high, average = low * modifier.value, high * modifier.value, average * modifier.value
                elif modifier.type == ModifierType.DIVIDER:
                    low, high, average = low // modifier.value, high // modifier.value, average / modifier.value

            total_min += low
            total_max += high
            total_average += average

        for modifier in all_modifiers:
            if modifier.id in previews:
                continue
            previews[modifier.id] = ModifierPreview(
                label=modifier.name,
                value=modifier.display_value,
                source=modifier.source.value,
                timing=modifier.application,
                category=MODIFIER_CATEGORIES.get(modifier.source, "condition"),
                conditional=modifier.condition is not None,
            )
            if modifier.type == ModifierType.DICE_BONUS:
                dice.append(DicePreview(
                    label=modifier.name,
                    expression=modifier.value.to_notation(),
                    source=modifier.source.value,
                    critical_affected=modifier.application != ApplicationTiming.BEFORE_ROLL,
                    category="bonus",
                ))

        conditions = self._condition_previews(definition, all_modifiers, sorted(crit_faces))

        if conditional:
            notes.append(f"{len(conditional)} conditional modifier(s) apply")
        if approximate:
            notes.append("Average for keeping several dice is approximate")
        if exploding:
            notes.append("Exploding dice have no true maximum; the maximum shown is an estimate")

        return PreRollInfo(
            dice=dice,
            modifiers=list(previews.values()),
            conditions=conditions,
            estimated_range=EstimatedRange(min=total_min, max=total_max, average=round(total_average, 2)),
            critical_range=sorted(crit_faces),
            critical_failure_range=sorted(failure_faces),
            notes=notes,
            breakdown=breakdown,
        )

    def _condition_previews(
        self,
        definition: RollDefinition,
        modifiers: List[RollModifier],
        crit_faces: List[int],
    ) -> List[ConditionPreview]:
        conditions: List[ConditionPreview] = []
        advantage, disadvantage = self._advantage_state(definition.context, modifiers)

        if advantage and not disadvantage:
            conditions.append(ConditionPreview("Advantage", "Roll twice, keep highest", True, "advantage", "⬆️"))
        elif disadvantage and not advantage:
            conditions.append(ConditionPreview("Disadvantage", "Roll twice, keep lowest", True, "disadvantage", "⬇️"))

        if crit_faces and crit_faces != [20]:
            conditions.append(ConditionPreview(
                f"Critical {crit_faces[0]}-{crit_faces[-1]}",
                f"Critical hits on {', '.join(str(f) for f in crit_faces)}",
                True,
                "special",
                "⭐",
            ))

        for modifier in modifiers:
            if modifier.type == ModifierType.FLAT_BONUS and modifier.source == ModifierSource.CONDITION and modifier.value < 0:
                conditions.append(ConditionPreview(modifier.name, modifier.description, True, "penalty"))
            elif modifier.type == ModifierType.DICE_BONUS and modifier.source in (ModifierSource.SPELL, ModifierSource.CLASS_FEATURE):
                conditions.append(ConditionPreview(modifier.name, modifier.description, True, "bonus"))

        return conditions

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute_roll(self, definition: RollDefinition) -> RollResult:
        """
        Roll a definition with the configured timeout.

        The roll runs in a worker thread raced against
        `max_execution_time_ms`. A roll that times out is abandoned, not
        interrupted.

        Raises:
            ParseError, RollEngineError: passed through unchanged
            RollEngineError: TIMEOUT, or EXECUTION_ERROR wrapping any other
                failure
        """
        roll_id = self._new_roll_id()
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        timeout = self.config.max_execution_time_ms / 1000

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._perform_roll, definition, roll_id, started),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(f"Roll {roll_id} timed out after {elapsed_ms:.0f} ms ({definition.name})")
            raise RollEngineError(
                RollEngineErrorKind.TIMEOUT,
                f"Roll execution timed out after {self.config.max_execution_time_ms} ms",
                {"definition": definition, "roll_id": roll_id, "elapsed_ms": round(elapsed_ms, 3)},
            ) from None
        except (ParseError, RollEngineError) as e:
            logger.error(f"Roll {roll_id} failed ({definition.name}): {e}")
            raise
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(f"Roll {roll_id} failed ({definition.name}): {e}")
            raise RollEngineError(
                RollEngineErrorKind.EXECUTION_ERROR,
                f"Roll execution failed: {e}",
                {"definition": definition, "roll_id": roll_id, "elapsed_ms": round(elapsed_ms, 3)},
                cause=e,
            ) from e

    def execute_roll_sync(self, definition: RollDefinition) -> RollResult:
        """Same pipeline as `execute_roll`, without the timeout race."""
        return self._perform_roll(definition, self._new_roll_id(), time.perf_counter())

    def _new_roll_id(self) -> str:
        return f"roll_{uuid.uuid4().hex}"

    def _sub_definition(
        self,
        definition: RollDefinition,
        labeled: LabeledDiceExpression,
        critical_hit: bool,
    ) -> RollDefinition:
        label = labeled.label or "Roll"
        return replace(
            definition,
            id=f"{definition.id}_{label}",
            name=f"{definition.name} - {label}",
            type=infer_roll_type(labeled.label) or definition.type,
            base_expression=MultiDiceExpression(labeled.to_notation(), (labeled,)),
            critical_hit=critical_hit,
        )

    def _perform_roll(self, definition: RollDefinition, roll_id: str, started: float) -> RollResult:
        timestamp = time.time()
        multi_results: List[LabeledRollResult] = []
        breakdown: List[RollBreakdown] = []
        dice: List[DiceRoll] = []
        applied: List[str] = []
        total = 0
        any_critical = False
        any_failure = False
        attack_critical = False
        success = None

        for labeled in definition.base_expression.expressions:
            label = labeled.label or "Roll"
            sub_type = infer_roll_type(labeled.label) or definition.type
            critical_hit = definition.critical_hit or (attack_critical and sub_type == RollType.DAMAGE)
            sub = self._sub_definition(definition, labeled, critical_hit)

            result = self._execute_single(labeled, sub, f"{roll_id}_{label}", timestamp)

            multi_results.append(LabeledRollResult(label=label, result=result))
            total += result.total
            breakdown.extend(result.breakdown)
            dice.extend(result.dice)
            applied.extend(m for m in result.metadata.modifiers_applied if m not in applied)
            any_critical = any_critical or result.critical_success
            any_failure = any_failure or result.critical_failure
            if sub_type in CRITICAL_HIT_ROLL_TYPES and result.critical_success:
                attack_critical = True
            if success is None:
                success = result.success

        elapsed_ms = (time.perf_counter() - started) * 1000
        target = definition.context.target

        if self.config.enable_logging:
            logger.debug(
                f"Roll {roll_id} ({definition.name}): {definition.base_expression.full_expression} = {total}"
                f"{' CRITICAL' if any_critical else ''}{' FUMBLE' if any_failure else ''}"
            )

        return RollResult(
            total=total,
            breakdown=breakdown,
            critical_success=any_critical,
            critical_failure=any_failure,
            success=success,
            target_number=self._target_number(target),
            multi_results=multi_results,
            dice=dice,
            metadata=RollMetadata(
                type=definition.type,
                definition=definition,
                modifiers_applied=applied,
                conditions_active=_active_conditions(definition.context),
                timestamp=timestamp,
                roll_id=roll_id,
                execution_time_ms=round(elapsed_ms, 3),
            ),
        )

    def _execute_single(
        self,
        labeled: LabeledDiceExpression,
        definition: RollDefinition,
        roll_id: str,
        timestamp: float,
    ) -> RollResult:
        started = time.perf_counter()
        label = labeled.label or "Roll"
        roll_type = definition.type
        modifiers = self.gather_modifiers(definition)
        applied: List[str] = []

        # 1. Advantage / disadvantage rewrite
        expression, _ = self._apply_pre_roll(labeled.expression, definition.context, modifiers)
        if expression is not labeled.expression:
            applied.extend(m.id for m in modifiers if m.type in (ModifierType.ADVANTAGE, ModifierType.DISADVANTAGE))

        # 2. Dice
        dice_roll = self._roller.roll(expression)
        rolls = [dice_roll]

        # 3. Critical hit / failure, judged on the kept d20s
        crit_faces = self.critical_range(roll_type, modifiers) if dice_roll.sides == 20 else []
        failure_faces = self.critical_failure_range(roll_type) if dice_roll.sides == 20 else []
        is_critical = any(r in crit_faces for r in dice_roll.rolls)
        is_failure = any(r in failure_faces for r in dice_roll.rolls)
        if crit_faces:
            applied.extend(m.id for m in modifiers if m.type == ModifierType.CRITICAL_RANGE)
        dice_roll.critical = is_critical

        breakdown = self._expression_breakdown(label, expression, dice_roll)

        # 4. Critical damage
        critical_damage = roll_type == RollType.DAMAGE and definition.critical_hit
        if critical_damage and not expression.is_flat:
            extra = self._roller.roll(expression.without_modifier())
            extra.critical = True
            rolls.append(extra)
            breakdown.append(RollBreakdown(
                BreakdownType.CRITICAL,
                "Critical Hit",
                extra.total,
                {"expression": expression.without_modifier().to_notation(), "rolls": list(extra.rolls),
                 "sides": extra.sides, "strategy": self.config.critical_rules.damage_strategy.value},
            ))
        if critical_damage and self._additional_dice is not None:
            bonus = self._roller.roll(self._additional_dice)
            bonus.critical = True
            rolls.append(bonus)
            breakdown.append(RollBreakdown(
                BreakdownType.CRITICAL,
                "Additional Critical Dice",
                bonus.total,
                {"expression": self._additional_dice.to_notation(), "rolls": list(bonus.rolls), "sides": bonus.sides},
            ))

        # 5. External modifiers, in priority order
        critical = is_critical or critical_damage
        subtotal = sum(line.value for line in breakdown)
        for modifier in modifiers:
            if modifier.application == ApplicationTiming.ON_CRITICAL and not critical:
                continue
            line = self._apply_modifier(modifier, subtotal, critical_damage, rolls)
            if line is None:
                continue
            breakdown.append(line)
            subtotal += line.value
            applied.append(modifier.id)

        total = sum(line.value for line in breakdown)
        target = definition.context.target
        success = self._determine_success(total, roll_type, target, is_critical, is_failure)
        elapsed_ms = (time.perf_counter() - started) * 1000

        return RollResult(
            total=total,
            breakdown=breakdown,
            critical_success=is_critical,
            critical_failure=is_failure,
            success=success,
            target_number=self._target_number(target),
            dice=rolls,
            metadata=RollMetadata(
                type=roll_type,
                definition=definition,
                modifiers_applied=applied,
                conditions_active=_active_conditions(definition.context),
                timestamp=timestamp,
                roll_id=roll_id,
                execution_time_ms=round(elapsed_ms, 3),
            ),
        )

    def _expression_breakdown(self, label: str, expression: DiceExpression, dice_roll: DiceRoll) -> List[RollBreakdown]:
        """Dice line plus the expression's own modifier as a separate Bonus line."""
        if expression.is_flat:
            return [RollBreakdown(
                BreakdownType.MODIFIER,
                label,
                dice_roll.total,
                {"source": "Expression", "expression": expression.to_notation()},
            )]

        descriptions = [op.description for op in dice_roll.operations]
        lines = [RollBreakdown(
            BreakdownType.DIE,
            label,
            dice_roll.dice_total,
            {
                "expression": expression.to_notation(),
                "rolls": list(dice_roll.rolls),
                "initial_rolls": list(dice_roll.initial_rolls),
                "sides": dice_roll.sides,
                "rerolled": dice_roll.rerolled,
                "operations": descriptions,
                "description": "; ".join(descriptions),
                "dropped": len(dice_roll.initial_rolls) > len(dice_roll.rolls),
            },
        )]
        if expression.modifier:
            lines.append(RollBreakdown(
                BreakdownType.MODIFIER,
                "Bonus",
                expression.modifier,
                {"source": "Expression"},
            ))
        return lines

    def _critical_doubles(self, modifier: RollModifier) -> bool:
        """Whether a dice modifier is in scope for critical damage doubling."""
        scope = self.config.critical_rules.affected_dice
        if scope == AffectedDice.EXCLUDE_MODIFIERS:
            return False
        if scope == AffectedDice.ALL_DAMAGE:
            return True
        return modifier.application != ApplicationTiming.BEFORE_ROLL

    def _apply_modifier(
        self,
        modifier: RollModifier,
        subtotal: int,
        critical_damage: bool,
        rolls: List[DiceRoll],
    ) -> Optional[RollBreakdown]:
        details = {"source": modifier.source.value, "id": modifier.id, "timing": modifier.application.value}

        if modifier.type == ModifierType.FLAT_BONUS:
            if not modifier.value:
                return None
            return RollBreakdown(BreakdownType.MODIFIER, modifier.name, modifier.value, details)

        if modifier.type == ModifierType.DICE_BONUS:
            expression = modifier.value
            doubled = critical_damage and not expression.is_flat and self._critical_doubles(modifier)
            if doubled:
                expression = expression.with_count(expression.count * 2)
            bonus = self._roller.roll(expression)
            bonus.critical = doubled
            rolls.append(bonus)
            details.update({
                "expression": expression.to_notation(),
                "rolls": list(bonus.rolls),
                "sides": bonus.sides,
                "critical": doubled,
            })
            return RollBreakdown(BreakdownType.MODIFIER, modifier.name, bonus.total, details)

        if modifier.type == ModifierType.MULTIPLIER:
            details["multiplier"] = modifier.value
            return RollBreakdown(BreakdownType.MODIFIER, modifier.name, subtotal * (modifier.value - 1), details)

        if modifier.type == ModifierType.DIVIDER:
            details["divider"] = modifier.value
            return RollBreakdown(BreakdownType.MODIFIER, modifier.name, subtotal // modifier.value - subtotal, details)

        if modifier.type in PRE_ROLL_MODIFIER_TYPES:
            # Advantage, disadvantage and critical range act before the dice land
            return None

        raise RollEngineError(
            RollEngineErrorKind.EXECUTION_ERROR,
            f"Modifier '{modifier.id}' has no application rule for type {modifier.type.value}",
            {"modifier": modifier.id, "type": modifier.type.value},
        )

    @staticmethod
    def _target_number(target) -> Optional[int]:
        if target is None:
            return None
        return target.ac if target.ac is not None else target.save_bonus

    @staticmethod
    def _determine_success(total, roll_type, target, is_critical, is_failure) -> Optional[bool]:
        if target is None or roll_type not in D20_TEST_ROLL_TYPES:
            return None
        if roll_type in (RollType.ATTACK, RollType.SAVE):
            if is_critical:
                return True
            if is_failure:
                return False
        if target.ac is not None:
            return total >= target.ac
        if target.save_bonus is not None:
            return total >= target.save_bonus
        return None
