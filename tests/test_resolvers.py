"""Tests for modifier resolvers and feature identifiers."""
import pytest

from roll_engine.core.features import (
    FeatureId,
    SourceId,
    has_feature,
    infer_legacy_identifiers,
    resolve_identifiers,
    source_is,
)
from roll_engine.core.models import (
    ApplicationTiming,
    CharacterInfo,
    Environment,
    ModifierType,
    RollContext,
    RollSource,
    RollType,
    SourceType,
    TargetInfo,
)
from roll_engine.core.resolvers import (
    DEFAULT_RESOLVERS,
    Skill,
    attack_advantage_state,
    can_sneak_attack,
    get_ability_modifier,
    get_ability_score,
    normalize_ability,
    normalize_skill,
    register_default_resolvers,
    resolve_ability_modifiers,
    resolve_advantage_modifiers,
    resolve_class_feature_modifiers,
    resolve_damage_type_modifiers,
    resolve_equipment_modifiers,
    resolve_proficiency_modifiers,
    resolve_situational_modifiers,
    resolve_spell_modifiers,
)
from roll_engine.core.roll_engine import RollEngine


def _by_id(modifiers):
    return {m.id: m for m in modifiers}


@pytest.fixture
def warlock():
    return CharacterInfo(
        id="player-3",
        level=5,
        ability_scores={"cha": 18, "con": 14},
        class_name="Warlock",
    )


@pytest.fixture
def eldritch_blast():
    return RollSource(type=SourceType.SPELL, name="Eldritch Blast", properties={"damage": "1d10"})


@pytest.fixture
def shortbow():
    return RollSource(
        type=SourceType.WEAPON,
        name="Shortbow",
        tags=frozenset({"simple", "ranged"}),
        properties={"damage": "1d6", "damage_type": "piercing"},
        source_id="shortbow",
    )


class TestHelpers:
    """Tests for ability and skill lookups."""

    @pytest.mark.parametrize("score,expected", [(1, -5), (8, -1), (10, 0), (11, 0), (16, 3), (20, 5)])
    def test_ability_modifier(self, score, expected):
        assert get_ability_modifier(score) == expected

    def test_normalize_ability(self):
        assert normalize_ability("DEX") == "dexterity"
        assert normalize_ability("Dexterity Save") == "dexterity"
        assert normalize_ability("wisdom") == "wisdom"
        assert normalize_ability("Luck") is None
        assert normalize_ability(None) is None

    def test_normalize_skill(self):
        assert normalize_skill("Sleight of Hand") == Skill.SLEIGHT_OF_HAND
        assert normalize_skill("animal-handling") == Skill.ANIMAL_HANDLING
        assert normalize_skill("Basket Weaving") is None

    def test_ability_score_by_abbreviation(self, warlock):
        assert get_ability_score(warlock, "charisma") == 18
        assert get_ability_score(warlock, "strength") is None


class TestAbilityResolver:
    """Tests for governing ability modifiers."""

    def test_melee_weapon_uses_strength(self, fighter, longsword, make_context):
        modifiers = resolve_ability_modifiers(make_context(fighter, longsword))
        assert len(modifiers) == 1
        assert modifiers[0].id == "ability_strength"
        assert modifiers[0].value == 3
        assert modifiers[0].priority == 10

    def test_finesse_uses_better_ability(self, rogue, rapier, make_context):
        modifiers = resolve_ability_modifiers(make_context(rogue, rapier))
        assert modifiers[0].id == "ability_dexterity"
        assert modifiers[0].value == 4

    def test_ranged_uses_dexterity(self, fighter, shortbow, make_context):
        modifiers = resolve_ability_modifiers(make_context(fighter, shortbow))
        assert modifiers[0].id == "ability_dexterity"
        assert modifiers[0].value == 1

    def test_spell_uses_spellcasting_ability_for_attacks(self, warlock, eldritch_blast, make_context):
        modifiers = resolve_ability_modifiers(make_context(warlock, eldritch_blast))
        assert modifiers[0].id == "ability_charisma"
        assert modifiers[0].value == 4
        assert modifiers[0].applies_to(RollType.SPELL_ATTACK)
        assert not modifiers[0].applies_to(RollType.DAMAGE)

    def test_skill_uses_its_ability(self, rogue, make_context):
        source = RollSource(SourceType.SKILL, "Stealth")
        modifiers = resolve_ability_modifiers(make_context(rogue, source))
        assert modifiers[0].id == "ability_dexterity"

    def test_unknown_skill_emits_nothing(self, rogue, make_context):
        source = RollSource(SourceType.SKILL, "Basket Weaving")
        assert resolve_ability_modifiers(make_context(rogue, source)) == []

    def test_save_uses_named_ability(self, fighter, make_context):
        source = RollSource(SourceType.SAVE, "Constitution")
        modifiers = resolve_ability_modifiers(make_context(fighter, source))
        assert modifiers[0].id == "ability_constitution"
        assert modifiers[0].value == 2

    def test_zero_modifier_emits_nothing(self, fighter, make_context):
        source = RollSource(SourceType.ABILITY, "Intelligence")
        assert resolve_ability_modifiers(make_context(fighter, source)) == []

    def test_missing_scores_emit_nothing(self, blank_character, longsword, make_context):
        assert resolve_ability_modifiers(make_context(blank_character, longsword)) == []


class TestProficiencyResolver:
    """Tests for proficiency and expertise."""

    def test_proficient_weapon(self, fighter, longsword, make_context):
        modifiers = resolve_proficiency_modifiers(make_context(fighter, longsword))
        assert len(modifiers) == 1
        assert modifiers[0].id == "proficiency_bonus"
        assert modifiers[0].value == 3
        assert modifiers[0].applies_to(RollType.ATTACK)
        assert not modifiers[0].applies_to(RollType.DAMAGE)

    def test_weapon_proficiency_by_name(self, rogue, rapier, make_context):
        assert _by_id(resolve_proficiency_modifiers(make_context(rogue, rapier)))

    def test_not_proficient(self, rogue, longsword, make_context):
        assert resolve_proficiency_modifiers(make_context(rogue, longsword)) == []

    def test_expertise_adds_second_bonus(self, rogue, make_context):
        source = RollSource(SourceType.SKILL, "Stealth")
        modifiers = _by_id(resolve_proficiency_modifiers(make_context(rogue, source)))
        assert modifiers["proficiency_bonus"].value == 3
        assert modifiers["expertise_bonus"].value == 3
        assert modifiers["expertise_bonus"].priority == 21

    def test_proficiency_without_expertise(self, rogue, make_context):
        source = RollSource(SourceType.SKILL, "Sleight of Hand")
        assert list(_by_id(resolve_proficiency_modifiers(make_context(rogue, source)))) == ["proficiency_bonus"]

    def test_saving_throw(self, fighter, make_context):
        proficient = RollSource(SourceType.SAVE, "CON")
        not_proficient = RollSource(SourceType.SAVE, "Dexterity")
        assert resolve_proficiency_modifiers(make_context(fighter, proficient))
        assert resolve_proficiency_modifiers(make_context(fighter, not_proficient)) == []

    def test_explicit_proficiency_bonus(self, make_context, longsword):
        character = CharacterInfo(id="x", level=1, proficiency_bonus=4, weapon_proficiencies=frozenset({"martial"}))
        assert resolve_proficiency_modifiers(make_context(character, longsword))[0].value == 4


class TestSpellResolver:
    """Tests for spell-effect dice bonuses."""

    def test_bless_on_weapon(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, Environment(blessed=True))
        bless = _by_id(resolve_spell_modifiers(context))["bless"]
        assert bless.type == ModifierType.DICE_BONUS
        assert bless.value.to_notation() == "1d4"
        assert bless.applies_to(RollType.ATTACK)
        assert not bless.applies_to(RollType.DAMAGE)

    def test_bless_ignores_skills(self, fighter, make_context):
        context = make_context(fighter, RollSource(SourceType.SKILL, "Athletics"), Environment(blessed=True))
        assert resolve_spell_modifiers(context) == []

    def test_guidance_on_skill(self, fighter, make_context):
        context = make_context(fighter, RollSource(SourceType.SKILL, "Athletics"), Environment(guidance=True))
        guidance = _by_id(resolve_spell_modifiers(context))["guidance"]
        assert guidance.applies_to(RollType.SKILL)
        assert guidance.priority == 51

    def test_bardic_inspiration(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, Environment(inspired=True))
        inspiration = _by_id(resolve_spell_modifiers(context))["bardic_inspiration"]
        assert inspiration.value.to_notation() == "1d6"
        assert inspiration.applies_to(RollType.SAVE)
        assert not inspiration.applies_to(RollType.DAMAGE)

    def test_no_effects(self, fighter, longsword, make_context):
        assert resolve_spell_modifiers(make_context(fighter, longsword)) == []


class TestAdvantageResolver:
    """Tests for advantage and disadvantage conditions."""

    def test_hidden_attacker(self, rogue, rapier, make_context):
        context = make_context(rogue, rapier, Environment(hidden=True))
        hidden = _by_id(resolve_advantage_modifiers(context))["hidden_advantage"]
        assert hidden.type == ModifierType.ADVANTAGE

    def test_prone_target_melee(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, target=TargetInfo(ac=12, conditions=("prone",)))
        assert "prone_advantage" in _by_id(resolve_advantage_modifiers(context))

    def test_prone_target_ranged(self, fighter, shortbow, make_context):
        context = make_context(fighter, shortbow, Environment(target_prone=True))
        modifier = _by_id(resolve_advantage_modifiers(context))["prone_disadvantage"]
        assert modifier.type == ModifierType.DISADVANTAGE

    def test_only_weapons(self, fighter, make_context):
        context = make_context(fighter, RollSource(SourceType.SKILL, "Stealth"), Environment(hidden=True))
        assert resolve_advantage_modifiers(context) == []


class TestClassFeatureResolver:
    """Tests for Sneak Attack, Agonizing Blast and Improved Critical."""

    def test_sneak_attack_dice_scale_with_level(self, rogue, rapier, make_context):
        context = make_context(rogue, rapier, Environment(hidden=True))
        sneak = _by_id(resolve_class_feature_modifiers(context))["sneak_attack"]
        assert sneak.value.to_notation() == "3d6"
        assert sneak.application == ApplicationTiming.ON_DAMAGE
        assert sneak.condition(context) is True

    def test_sneak_attack_condition(self, rogue, rapier, make_context):
        context = make_context(rogue, rapier)
        sneak = _by_id(resolve_class_feature_modifiers(context))["sneak_attack"]
        assert sneak.condition(context) is False
        adjacent = make_context(rogue, rapier, Environment(ally_adjacent=True))
        assert sneak.condition(adjacent) is True

    def test_sneak_attack_from_prone_target(self, rogue, rapier, make_context):
        """Advantage against a prone target enables Sneak Attack."""
        context = make_context(rogue, rapier, target=TargetInfo(conditions=("prone",)))
        assert can_sneak_attack(context) is True

    def test_sneak_attack_from_flanking(self, rogue, rapier, make_context):
        assert can_sneak_attack(make_context(rogue, rapier, Environment(flanking=True))) is True

    def test_sneak_attack_blocked_by_disadvantage(self, rogue, rapier, shortbow, make_context):
        """An adjacent ally is not enough while the attack has disadvantage."""
        assert can_sneak_attack(make_context(rogue, rapier, Environment(ally_adjacent=True, disadvantage=True))) is False
        ranged_at_prone = make_context(rogue, shortbow, Environment(ally_adjacent=True, target_prone=True))
        assert can_sneak_attack(ranged_at_prone) is False

    def test_sneak_attack_when_advantage_cancels(self, rogue, rapier, make_context):
        context = make_context(rogue, rapier, Environment(ally_adjacent=True, advantage=True, disadvantage=True))
        assert can_sneak_attack(context) is True
        cancelled = make_context(rogue, rapier, Environment(advantage=True, disadvantage=True))
        assert can_sneak_attack(cancelled) is False

    def test_sneak_attack_needs_finesse_or_ranged(self, rogue, longsword, make_context):
        context = make_context(rogue, longsword, Environment(hidden=True))
        assert "sneak_attack" not in _by_id(resolve_class_feature_modifiers(context))

    def test_legacy_rogue_gets_sneak_attack(self, rapier, make_context):
        legacy = CharacterInfo(id="old", level=9, class_name="Rogue")
        sneak = _by_id(resolve_class_feature_modifiers(make_context(legacy, rapier)))["sneak_attack"]
        assert sneak.value.to_notation() == "5d6"

    def test_agonizing_blast(self, warlock, eldritch_blast, make_context):
        context = make_context(warlock, eldritch_blast)
        blast = _by_id(resolve_class_feature_modifiers(context))["agonizing_blast"]
        assert blast.value == 4
        assert blast.condition(context) is True

    def test_agonizing_blast_only_for_eldritch_blast(self, warlock, make_context):
        context = make_context(warlock, RollSource(SourceType.SPELL, "Fire Bolt"))
        blast = _by_id(resolve_class_feature_modifiers(context))["agonizing_blast"]
        assert blast.condition(context) is False

    def test_improved_critical(self, longsword, make_context):
        champion = CharacterInfo(id="c", level=3, class_name="Fighter", subclass="Champion")
        modifier = _by_id(resolve_class_feature_modifiers(make_context(champion, longsword)))["improved_critical"]
        assert modifier.type == ModifierType.CRITICAL_RANGE
        assert modifier.value == 19

    def test_superior_critical_replaces_improved(self, longsword, make_context):
        champion = CharacterInfo(id="c", level=15, class_name="Fighter", subclass="Champion")
        modifiers = resolve_class_feature_modifiers(make_context(champion, longsword))
        assert len(modifiers) == 1
        assert modifiers[0].value == 18
        assert modifiers[0].name == "Superior Critical"


class TestEquipmentAndDamageResolvers:

    def test_weapon_enhancement(self, fighter, make_context):
        sword = RollSource(SourceType.WEAPON, "Longsword", properties={"enhancement_bonus": 2})
        modifier = resolve_equipment_modifiers(make_context(fighter, sword))[0]
        assert modifier.id == "weapon_enhancement"
        assert modifier.value == 2
        assert modifier.applies_to(RollType.ATTACK) and modifier.applies_to(RollType.DAMAGE)

    def test_mundane_weapon(self, fighter, longsword, make_context):
        assert resolve_equipment_modifiers(make_context(fighter, longsword)) == []

    def test_resistance(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, target=TargetInfo(conditions=("resistant_slashing",)))
        modifier = _by_id(resolve_damage_type_modifiers(context))["resistance"]
        assert modifier.type == ModifierType.DIVIDER
        assert modifier.value == 2

    def test_vulnerability(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, target=TargetInfo(conditions=("vulnerable_slashing",)))
        modifier = _by_id(resolve_damage_type_modifiers(context))["vulnerability"]
        assert modifier.type == ModifierType.MULTIPLIER

    def test_other_damage_type_unaffected(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, target=TargetInfo(conditions=("resistant_fire",)))
        assert resolve_damage_type_modifiers(context) == []


class TestSituationalResolver:

    def test_flanking(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, Environment(flanking=True))
        assert _by_id(resolve_situational_modifiers(context))["flanking"].type == ModifierType.ADVANTAGE

    def test_flanking_ignores_ranged_weapons(self, fighter, shortbow, make_context):
        context = make_context(fighter, shortbow, Environment(flanking=True))
        assert "flanking" not in _by_id(resolve_situational_modifiers(context))

    def test_attack_advantage_state(self, fighter, longsword, shortbow, make_context):
        assert attack_advantage_state(make_context(fighter, longsword)) == (False, False)
        assert attack_advantage_state(make_context(fighter, longsword, Environment(flanking=True))) == (True, False)
        prone = Environment(target_prone=True)
        assert attack_advantage_state(make_context(fighter, shortbow, prone)) == (False, True)
        assert attack_advantage_state(make_context(fighter, longsword, Environment(disadvantage=True))) == (False, True)

    def test_cover(self, fighter, longsword, make_context):
        context = make_context(fighter, longsword, Environment(cover="three_quarters"))
        cover = _by_id(resolve_situational_modifiers(context))["cover_penalty"]
        assert cover.value == -5
        assert cover.name == "Three-Quarters Cover"


class TestFeatureIdentifiers:
    """Tests for feature lookup and the legacy name adapter."""

    def test_explicit_features(self, rogue, rapier, make_context):
        context = make_context(rogue, rapier)
        assert has_feature(context, FeatureId.SNEAK_ATTACK)
        assert not has_feature(context, FeatureId.AGONIZING_BLAST)

    def test_explicit_features_skip_class_inference(self, rapier):
        character = CharacterInfo(id="x", class_name="Rogue", features=frozenset({"cunning_action"}))
        assert infer_legacy_identifiers(character, rapier) == frozenset()

    def test_legacy_source_name(self, warlock, eldritch_blast):
        ids = infer_legacy_identifiers(warlock, eldritch_blast)
        assert SourceId.ELDRITCH_BLAST.value in ids
        assert FeatureId.AGONIZING_BLAST.value in ids

    def test_source_id_wins_over_name(self, warlock, make_context):
        source = RollSource(SourceType.SPELL, "Eldritch Blast", source_id="fire_bolt")
        assert not source_is(make_context(warlock, source), SourceId.ELDRITCH_BLAST)

    def test_resolve_identifiers_includes_source_id(self, fighter, longsword, make_context):
        assert "longsword" in resolve_identifiers(make_context(fighter, longsword))


class TestRegisterDefaultResolvers:

    def test_registers_every_resolver(self):
        engine = RollEngine()
        assert engine.resolver_names == []
        register_default_resolvers(engine)
        assert engine.resolver_names == list(DEFAULT_RESOLVERS)
