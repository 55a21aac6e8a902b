"""
Modifier Resolvers.

Each resolver is a pure function that inspects a RollContext and returns the
RollModifiers that apply to it. Resolvers never read engine state; the
engine decides which resolvers run and how their output is combined.

Resolvers:
- ability scores (STR/DEX, finesse, spellcasting, skill and save abilities)
- proficiency and expertise
- spell effects (Bless, Guidance, Bardic Inspiration)
- advantage conditions (hidden attacker, prone target)
- class features (Sneak Attack, Agonizing Blast, Improved Critical)
- equipment (magic weapon enhancement)
- damage types (vulnerability, resistance)
- situational (flanking, cover)
"""
import math
import re
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from roll_engine.core.features import FeatureId, SourceId, has_feature, source_is
from roll_engine.core.models import (
    D20_TEST_ROLL_TYPES,
    ApplicationTiming,
    CharacterInfo,
    ModifierSource,
    ModifierType,
    RollContext,
    RollModifier,
    RollType,
    SourceType,
)
from roll_engine.core.dice_parser import create_dice_expression


Resolver = Callable[[RollContext], List[RollModifier]]


class Skill(str, Enum):
    """D&D 5e skills mapped to ability scores."""
    # Strength
    ATHLETICS = "athletics"

    # Dexterity
    ACROBATICS = "acrobatics"
    SLEIGHT_OF_HAND = "sleight_of_hand"
    STEALTH = "stealth"

    # Intelligence
    ARCANA = "arcana"
    HISTORY = "history"
    INVESTIGATION = "investigation"
    NATURE = "nature"
    RELIGION = "religion"

    # Wisdom
    ANIMAL_HANDLING = "animal_handling"
    INSIGHT = "insight"
    MEDICINE = "medicine"
    PERCEPTION = "perception"
    SURVIVAL = "survival"

    # Charisma
    DECEPTION = "deception"
    INTIMIDATION = "intimidation"
    PERFORMANCE = "performance"
    PERSUASION = "persuasion"


SKILL_ABILITIES = {
    Skill.ATHLETICS: "strength",
    Skill.ACROBATICS: "dexterity",
    Skill.SLEIGHT_OF_HAND: "dexterity",
    Skill.STEALTH: "dexterity",
    Skill.ARCANA: "intelligence",
    Skill.HISTORY: "intelligence",
    Skill.INVESTIGATION: "intelligence",
    Skill.NATURE: "intelligence",
    Skill.RELIGION: "intelligence",
    Skill.ANIMAL_HANDLING: "wisdom",
    Skill.INSIGHT: "wisdom",
    Skill.MEDICINE: "wisdom",
    Skill.PERCEPTION: "wisdom",
    Skill.SURVIVAL: "wisdom",
    Skill.DECEPTION: "charisma",
    Skill.INTIMIDATION: "charisma",
    Skill.PERFORMANCE: "charisma",
    Skill.PERSUASION: "charisma",
}

ABILITY_ABBREVIATIONS = {
    "str": "strength",
    "dex": "dexterity",
    "con": "constitution",
    "int": "intelligence",
    "wis": "wisdom",
    "cha": "charisma",
}

SPELLCASTING_ABILITIES = {
    "artificer": "intelligence",
    "wizard": "intelligence",
    "cleric": "wisdom",
    "druid": "wisdom",
    "ranger": "wisdom",
    "bard": "charisma",
    "paladin": "charisma",
    "sorcerer": "charisma",
    "warlock": "charisma",
}

COVER_PENALTIES = {
    "half": -2,
    "three_quarters": -5,
}

ATTACK_ROLL_TYPES = frozenset({RollType.ATTACK, RollType.SPELL_ATTACK})
WEAPON_ROLL_TYPES = frozenset({RollType.ATTACK, RollType.DAMAGE})
DAMAGE_ROLL_TYPES = frozenset({RollType.DAMAGE})


# =============================================================================
# HELPERS
# =============================================================================

def get_ability_modifier(score: int) -> int:
    """Calculate ability modifier from score (D&D 5e formula)."""
    return (score - 10) // 2


def normalize_ability(text: Optional[str]) -> Optional[str]:
    """Map "DEX", "dexterity" or "Dexterity Save" to "dexterity"."""
    if not text:
        return None
    for word in re.split(r"[\s_\-]+", text.strip().lower()):
        if word in ABILITY_ABBREVIATIONS.values():
            return word
        if word in ABILITY_ABBREVIATIONS:
            return ABILITY_ABBREVIATIONS[word]
    return None


def normalize_skill(text: Optional[str]) -> Optional[Skill]:
    if not text:
        return None
    key = re.sub(r"[\s\-]+", "_", text.strip().lower())
    try:
        return Skill(key)
    except ValueError:
        return None


def get_ability_score(character: CharacterInfo, ability: str) -> Optional[int]:
    """Look up a score stored under either the full name or the abbreviation."""
    scores = {k.lower(): v for k, v in character.ability_scores.items()}
    if ability in scores:
        return scores[ability]
    for abbreviation, full_name in ABILITY_ABBREVIATIONS.items():
        if full_name == ability and abbreviation in scores:
            return scores[abbreviation]
    return None


def _ability_mod(character: CharacterInfo, ability: str) -> Optional[int]:
    score = get_ability_score(character, ability)
    if score is None:
        return None
    return get_ability_modifier(score)


def _tags(context: RollContext) -> set:
    return {tag.lower() for tag in context.source.tags}


def _is_ranged(context: RollContext) -> bool:
    return "ranged" in _tags(context)


def _save_ability(context: RollContext) -> Optional[str]:
    return normalize_ability(context.source.properties.get("ability")) or normalize_ability(context.source.name)


def _spellcasting_ability(context: RollContext) -> str:
    explicit = normalize_ability(context.source.properties.get("spellcasting_ability"))
    if explicit:
        return explicit
    return SPELLCASTING_ABILITIES.get(context.character.class_name.lower(), "charisma")


def attack_advantage_state(context: RollContext) -> Tuple[bool, bool]:
    """
    Advantage and disadvantage an attack from this context rolls with.

    Combines the environment flags with the advantage and situational
    resolvers, so a prone target or flanking counts the same way it does
    on the attack roll itself.
    """
    env = context.environment
    modifiers = resolve_advantage_modifiers(context) + resolve_situational_modifiers(context)
    advantage = env.advantage or any(m.type == ModifierType.ADVANTAGE for m in modifiers)
    disadvantage = env.disadvantage or any(m.type == ModifierType.DISADVANTAGE for m in modifiers)
    return advantage, disadvantage


def can_sneak_attack(context: RollContext) -> bool:
    """Sneak Attack needs net advantage, or an ally next to the target without net disadvantage."""
    advantage, disadvantage = attack_advantage_state(context)
    if advantage and not disadvantage:
        return True
    return context.environment.ally_adjacent and not (disadvantage and not advantage)


# =============================================================================
# RESOLVERS
# =============================================================================

def resolve_ability_modifiers(context: RollContext) -> List[RollModifier]:
    """
    Governing ability modifier for the roll source.

    Weapons use STR, DEX when ranged, or the better of the two for finesse
    weapons. Spells use the caster's spellcasting ability and only apply
    to spell attacks. Skills, saves and raw ability checks use the ability
    they name.
    """
    source = context.source
    character = context.character
    roll_types = frozenset()
    ability: Optional[str] = None

    if source.type == SourceType.WEAPON:
        tags = _tags(context)
        if "finesse" in tags:
            strength = get_ability_score(character, "strength") or 0
            dexterity = get_ability_score(character, "dexterity") or 0
            ability = "dexterity" if dexterity > strength else "strength"
        elif "ranged" in tags:
            ability = "dexterity"
        else:
            ability = "strength"
    elif source.type == SourceType.SPELL:
        ability = _spellcasting_ability(context)
        roll_types = ATTACK_ROLL_TYPES
    elif source.type == SourceType.SKILL:
        skill = normalize_skill(source.name)
        if skill is not None:
            ability = SKILL_ABILITIES[skill]
    elif source.type in (SourceType.SAVE, SourceType.ABILITY):
        ability = _save_ability(context)

    if ability is None:
        return []

    modifier = _ability_mod(character, ability)
    if not modifier:
        return []

    return [RollModifier(
        id=f"ability_{ability}",
        name=f"{ability.capitalize()} Modifier",
        source=ModifierSource.ABILITY_SCORE,
        type=ModifierType.FLAT_BONUS,
        value=modifier,
        priority=10,
        description=f"{ability.capitalize()} ability modifier",
        roll_types=roll_types,
    )]


def resolve_proficiency_modifiers(context: RollContext) -> List[RollModifier]:
    """Proficiency bonus for proficient weapons, skills and saves, plus expertise."""
    source = context.source
    character = context.character
    bonus = character.effective_proficiency_bonus
    proficient = False
    expert = False
    roll_types = frozenset()

    if source.type == SourceType.WEAPON:
        known = {p.lower() for p in character.weapon_proficiencies}
        names = {source.name.lower()} | _tags(context)
        if source.source_id:
            names.add(source.source_id.lower())
        proficient = bool(known & names)
        roll_types = ATTACK_ROLL_TYPES
    elif source.type == SourceType.SKILL:
        skill = normalize_skill(source.name)
        if skill is not None:
            proficient = skill in {normalize_skill(s) for s in character.skill_proficiencies}
            expert = proficient and skill in {normalize_skill(s) for s in character.expertise}
    elif source.type == SourceType.SAVE:
        ability = _save_ability(context)
        if ability is not None:
            proficient = ability in {normalize_ability(s) for s in character.saving_throw_proficiencies}

    if not proficient:
        return []

    modifiers = [RollModifier(
        id="proficiency_bonus",
        name="Proficiency Bonus",
        source=ModifierSource.PROFICIENCY,
        type=ModifierType.FLAT_BONUS,
        value=bonus,
        priority=20,
        description=f"Proficient with {source.name}",
        roll_types=roll_types,
    )]
    if expert:
        modifiers.append(RollModifier(
            id="expertise_bonus",
            name="Expertise",
            source=ModifierSource.EXPERTISE,
            type=ModifierType.FLAT_BONUS,
            value=bonus,
            priority=21,
            description=f"Expertise in {source.name}",
        ))
    return modifiers


def resolve_spell_modifiers(context: RollContext) -> List[RollModifier]:
    """Dice bonuses from active spell effects."""
    env = context.environment
    source_type = context.source.type
    modifiers: List[RollModifier] = []

    if env.blessed and source_type in (SourceType.WEAPON, SourceType.SPELL, SourceType.SAVE):
        modifiers.append(RollModifier(
            id="bless",
            name="Bless",
            source=ModifierSource.SPELL,
            type=ModifierType.DICE_BONUS,
            value=create_dice_expression(1, 4),
            priority=50,
            description="Add 1d4 to attack rolls and saving throws",
            roll_types=frozenset({
                RollType.ATTACK, RollType.SPELL_ATTACK, RollType.SAVE,
                RollType.DEATH_SAVE, RollType.CONCENTRATION,
            }),
        ))

    if env.guidance and source_type in (SourceType.SKILL, SourceType.ABILITY):
        modifiers.append(RollModifier(
            id="guidance",
            name="Guidance",
            source=ModifierSource.SPELL,
            type=ModifierType.DICE_BONUS,
            value=create_dice_expression(1, 4),
            priority=51,
            description="Add 1d4 to one ability check",
            roll_types=frozenset({RollType.SKILL, RollType.ABILITY}),
        ))

    if env.inspired:
        modifiers.append(RollModifier(
            id="bardic_inspiration",
            name="Bardic Inspiration",
            source=ModifierSource.CLASS_FEATURE,
            type=ModifierType.DICE_BONUS,
            value=create_dice_expression(1, 6),
            priority=52,
            description="Add 1d6 to one ability check, attack roll, or saving throw",
            roll_types=D20_TEST_ROLL_TYPES,
        ))

    return modifiers


def resolve_advantage_modifiers(context: RollContext) -> List[RollModifier]:
    """Advantage for hidden attackers; advantage or disadvantage against prone targets."""
    if context.source.type != SourceType.WEAPON:
        return []

    env = context.environment
    modifiers: List[RollModifier] = []

    if env.hidden:
        modifiers.append(RollModifier(
            id="hidden_advantage",
            name="Hidden",
            source=ModifierSource.CONDITION,
            type=ModifierType.ADVANTAGE,
            priority=30,
            description="Unseen attackers have advantage",
            roll_types=ATTACK_ROLL_TYPES,
        ))

    target_conditions = context.target.conditions if context.target else ()
    if env.target_prone or "prone" in target_conditions:
        if _is_ranged(context):
            modifiers.append(RollModifier(
                id="prone_disadvantage",
                name="Prone Target (Ranged)",
                source=ModifierSource.CONDITION,
                type=ModifierType.DISADVANTAGE,
                priority=31,
                description="Ranged attacks against a prone target have disadvantage",
                roll_types=ATTACK_ROLL_TYPES,
            ))
        else:
            modifiers.append(RollModifier(
                id="prone_advantage",
                name="Prone Target (Melee)",
                source=ModifierSource.CONDITION,
                type=ModifierType.ADVANTAGE,
                priority=31,
                description="Melee attacks against a prone target have advantage",
                roll_types=ATTACK_ROLL_TYPES,
            ))

    return modifiers


def resolve_class_feature_modifiers(context: RollContext) -> List[RollModifier]:
    character = context.character
    source = context.source
    modifiers: List[RollModifier] = []

    if has_feature(context, FeatureId.SNEAK_ATTACK) and source.type == SourceType.WEAPON:
        tags = _tags(context)
        if "finesse" in tags or "ranged" in tags:
            dice_count = math.ceil(character.level / 2)
            modifiers.append(RollModifier(
                id="sneak_attack",
                name="Sneak Attack",
                source=ModifierSource.CLASS_FEATURE,
                type=ModifierType.DICE_BONUS,
                value=create_dice_expression(dice_count, 6),
                application=ApplicationTiming.ON_DAMAGE,
                priority=60,
                description=f"Extra {dice_count}d6 damage once per turn",
                condition=can_sneak_attack,
                roll_types=DAMAGE_ROLL_TYPES,
            ))

    if has_feature(context, FeatureId.AGONIZING_BLAST):
        charisma = _ability_mod(character, "charisma")
        if charisma:
            modifiers.append(RollModifier(
                id="agonizing_blast",
                name="Agonizing Blast",
                source=ModifierSource.CLASS_FEATURE,
                type=ModifierType.FLAT_BONUS,
                value=charisma,
                application=ApplicationTiming.ON_DAMAGE,
                priority=61,
                description="Add Charisma modifier to Eldritch Blast damage",
                condition=lambda ctx: source_is(ctx, SourceId.ELDRITCH_BLAST),
                roll_types=DAMAGE_ROLL_TYPES,
            ))

    # Superior Critical replaces Improved Critical
    crit_threshold = None
    if has_feature(context, FeatureId.SUPERIOR_CRITICAL):
        crit_threshold = 18
    elif has_feature(context, FeatureId.IMPROVED_CRITICAL):
        crit_threshold = 19
    if crit_threshold is not None and source.type == SourceType.WEAPON:
        modifiers.append(RollModifier(
            id="improved_critical",
            name="Improved Critical" if crit_threshold == 19 else "Superior Critical",
            source=ModifierSource.CLASS_FEATURE,
            type=ModifierType.CRITICAL_RANGE,
            value=crit_threshold,
            priority=40,
            description=f"Weapon attacks score a critical hit on {crit_threshold}-20",
            roll_types=ATTACK_ROLL_TYPES,
        ))

    return modifiers


def resolve_equipment_modifiers(context: RollContext) -> List[RollModifier]:
    """Enhancement bonus of a magic weapon (+1/+2/+3) to attack and damage."""
    if context.source.type != SourceType.WEAPON:
        return []
    bonus = int(context.source.properties.get("enhancement_bonus", 0) or 0)
    if bonus <= 0:
        return []
    return [RollModifier(
        id="weapon_enhancement",
        name=f"+{bonus} {context.source.name}",
        source=ModifierSource.ITEM,
        type=ModifierType.FLAT_BONUS,
        value=bonus,
        priority=25,
        description=f"Magic weapon +{bonus} to attack and damage",
        roll_types=WEAPON_ROLL_TYPES,
    )]


def resolve_damage_type_modifiers(context: RollContext) -> List[RollModifier]:
    """Vulnerability doubles and resistance halves damage of the matching type."""
    damage_type = context.source.properties.get("damage_type")
    if not damage_type or context.target is None:
        return []

    damage_type = str(damage_type).lower()
    conditions = {c.lower() for c in context.target.conditions}
    modifiers: List[RollModifier] = []

    if f"vulnerable_{damage_type}" in conditions:
        modifiers.append(RollModifier(
            id="vulnerability",
            name=f"Vulnerable to {damage_type}",
            source=ModifierSource.CONDITION,
            type=ModifierType.MULTIPLIER,
            value=2,
            application=ApplicationTiming.ON_DAMAGE,
            priority=100,
            description=f"Target takes double {damage_type} damage",
            roll_types=DAMAGE_ROLL_TYPES,
        ))

    if f"resistant_{damage_type}" in conditions:
        modifiers.append(RollModifier(
            id="resistance",
            name=f"Resistant to {damage_type}",
            source=ModifierSource.CONDITION,
            type=ModifierType.DIVIDER,
            value=2,
            application=ApplicationTiming.ON_DAMAGE,
            priority=101,
            description=f"Target takes half {damage_type} damage",
            roll_types=DAMAGE_ROLL_TYPES,
        ))

    return modifiers


def resolve_situational_modifiers(context: RollContext) -> List[RollModifier]:
    env = context.environment
    modifiers: List[RollModifier] = []

    if env.flanking and context.source.type == SourceType.WEAPON and not _is_ranged(context):
        modifiers.append(RollModifier(
            id="flanking",
            name="Flanking",
            source=ModifierSource.CONDITION,
            type=ModifierType.ADVANTAGE,
            priority=35,
            description="Flanking grants advantage on melee attacks",
            roll_types=ATTACK_ROLL_TYPES,
        ))

    penalty = COVER_PENALTIES.get(env.cover or "")
    if penalty:
        modifiers.append(RollModifier(
            id="cover_penalty",
            name=f"{env.cover.replace('_', '-').title()} Cover",
            source=ModifierSource.CONDITION,
            type=ModifierType.FLAT_BONUS,
            value=penalty,
            priority=36,
            description=f"Target cover adds {-penalty} to AC",
            roll_types=ATTACK_ROLL_TYPES,
        ))

    return modifiers


DEFAULT_RESOLVERS: Dict[str, Resolver] = {
    "ability": resolve_ability_modifiers,
    "proficiency": resolve_proficiency_modifiers,
    "spell": resolve_spell_modifiers,
    "advantage": resolve_advantage_modifiers,
    "class_feature": resolve_class_feature_modifiers,
    "equipment": resolve_equipment_modifiers,
    "damage_type": resolve_damage_type_modifiers,
    "situational": resolve_situational_modifiers,
}


def register_default_resolvers(engine) -> None:
    """Enable the standard resolver set on an engine."""
    for name, resolver in DEFAULT_RESOLVERS.items():
        engine.register_resolver(name, resolver)
