"""
Roll Session.

Per-table (or per-player) roll state kept outside the engine: roll history,
the last pre-roll preview and summary stats. Sessions are created explicitly
and passed to whoever needs them; nothing here is module-level state.
"""
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from roll_engine.core.dice_parser import parse_any_dice_expression
from roll_engine.core.models import (
    PreRollInfo,
    RollContext,
    RollDefinition,
    RollResult,
    RollSource,
    RollType,
    SourceType,
)
from roll_engine.core.roll_engine import RollEngine


# Display names per roll type; "{source}" is the roll source name
ROLL_NAMES = {
    RollType.ATTACK: "{source} Attack",
    RollType.DAMAGE: "{source} Damage",
    RollType.SKILL: "{source}",
    RollType.SAVE: "{source} Save",
    RollType.INITIATIVE: "Initiative",
    RollType.DEATH_SAVE: "Death Save",
    RollType.CONCENTRATION: "Concentration Save",
    RollType.SPELL_ATTACK: "{source} Spell Attack",
    RollType.SPELL_SAVE: "{source} Spell Save",
    RollType.HEALING: "{source} Healing",
    RollType.ABILITY: "{source} Check",
}

DEFAULT_DAMAGE_EXPRESSION = "1d6"
DEFAULT_HEALING_EXPRESSION = "2d4+2"  # Potion of Healing
DEFAULT_D20_EXPRESSION = "1d20"


class RollSession:
    """
    Roll history and convenience rolls on top of a RollEngine.

    Lifecycle: create with an engine, roll (each result is recorded newest
    first, capped at `history_limit`), read history and stats, clear.
    """

    def __init__(self, engine: RollEngine, history_limit: int = 100):
        self.engine = engine
        self.history_limit = history_limit
        self._history: List[RollResult] = []
        self.last_pre_roll_info: Optional[PreRollInfo] = None

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    def create_roll_definition(
        self,
        roll_type: RollType,
        context: RollContext,
        expression: Optional[str] = None,
        name: Optional[str] = None,
        critical_hit: bool = False,
    ) -> RollDefinition:
        """
        Build a roll definition with sensible defaults for the roll type.

        Damage defaults to the source's "damage" property (or 1d6), healing
        to 2d4+2, everything else to 1d20.
        """
        if expression is None:
            if roll_type == RollType.DAMAGE:
                expression = context.source.properties.get("damage") or DEFAULT_DAMAGE_EXPRESSION
            elif roll_type == RollType.HEALING:
                expression = DEFAULT_HEALING_EXPRESSION
            else:
                expression = DEFAULT_D20_EXPRESSION

        if name is None:
            template = ROLL_NAMES.get(roll_type, roll_type.value)
            name = template.format(source=context.source.name)

        return RollDefinition(
            id=f"{roll_type.value}_{uuid.uuid4().hex[:12]}",
            type=roll_type,
            name=name,
            base_expression=parse_any_dice_expression(expression),
            context=context,
            critical_hit=critical_hit,
        )

    # =========================================================================
    # ROLLING
    # =========================================================================

    async def analyze(self, definition: RollDefinition) -> PreRollInfo:
        self.last_pre_roll_info = await self.engine.analyze_roll(definition)
        return self.last_pre_roll_info

    async def roll(self, definition: RollDefinition) -> RollResult:
        """Analyze (when enabled), execute and record a roll."""
        if self.engine.config.enable_pre_roll_analysis:
            await self.analyze(definition)
        result = await self.engine.execute_roll(definition)
        self.record(result)
        self.last_pre_roll_info = None
        return result

    async def roll_expression(
        self,
        expression: str,
        context: RollContext,
        roll_type: RollType = RollType.RAW,
        name: Optional[str] = None,
    ) -> RollResult:
        """Roll any notation, including "attack:1d20+5,damage:1d8+3"."""
        definition = self.create_roll_definition(roll_type, context, expression, name=name)
        return await self.roll(definition)

    async def roll_attack_then_damage(
        self,
        context: RollContext,
        attack_expression: str,
        damage_expression: str,
    ) -> Tuple[RollResult, RollResult]:
        """
        Roll the attack, then the damage.

        The damage roll is marked as a critical hit when the attack crits, so
        the engine applies critical damage rules to it.
        """
        attack = await self.roll(self.create_roll_definition(RollType.ATTACK, context, attack_expression))
        damage_definition = self.create_roll_definition(
            RollType.DAMAGE,
            context,
            damage_expression,
            critical_hit=attack.critical_success,
        )
        damage = await self.roll(damage_definition)
        return attack, damage

    async def roll_skill(self, skill_name: str, context: RollContext) -> RollResult:
        source = RollSource(SourceType.SKILL, skill_name, tags=frozenset({"skill"}))
        return await self.roll(self.create_roll_definition(RollType.SKILL, replace(context, source=source)))

    async def roll_save(self, ability: str, context: RollContext) -> RollResult:
        source = RollSource(SourceType.SAVE, ability, tags=frozenset({"save"}))
        return await self.roll(self.create_roll_definition(RollType.SAVE, replace(context, source=source)))

    async def roll_initiative(self, context: RollContext) -> RollResult:
        source = RollSource(SourceType.ABILITY, "Dexterity", tags=frozenset({"initiative"}))
        return await self.roll(self.create_roll_definition(RollType.INITIATIVE, replace(context, source=source)))

    async def roll_death_save(self, context: RollContext) -> RollResult:
        source = RollSource(SourceType.SAVE, "Death Save", tags=frozenset({"death_save"}))
        return await self.roll(self.create_roll_definition(RollType.DEATH_SAVE, replace(context, source=source)))

    # =========================================================================
    # HISTORY
    # =========================================================================

    def record(self, result: RollResult) -> None:
        self._history.insert(0, result)
        del self._history[self.history_limit:]

    @property
    def history(self) -> List[RollResult]:
        """Recorded rolls, newest first."""
        return list(self._history)

    def last_roll(self, roll_type: Optional[RollType] = None) -> Optional[RollResult]:
        for result in self._history:
            if roll_type is None or result.metadata.type == roll_type:
                return result
        return None

    def clear_history(self) -> None:
        self._history = []

    def stats(self) -> Dict[str, Any]:
        count = len(self._history)
        return {
            "total_rolls": count,
            "critical_hits": sum(1 for r in self._history if r.critical_success),
            "critical_failures": sum(1 for r in self._history if r.critical_failure),
            "average_roll": sum(r.total for r in self._history) / count if count else 0,
        }
