"""
Stable identifiers for class features and named sources.

Resolvers look features up by identifier (assigned when character data is
loaded) instead of matching on display names. Older character records that
carry only names are handled by `infer_legacy_identifiers`, the single place
where substring matching is allowed.
"""
from enum import Enum
from typing import FrozenSet, Set

from roll_engine.core.models import CharacterInfo, RollContext, RollSource


class FeatureId(str, Enum):
    """Class features the resolvers know about."""
    SNEAK_ATTACK = "sneak_attack"
    AGONIZING_BLAST = "agonizing_blast"
    IMPROVED_CRITICAL = "improved_critical"
    SUPERIOR_CRITICAL = "superior_critical"


class SourceId(str, Enum):
    """Named roll sources with special rules attached."""
    ELDRITCH_BLAST = "eldritch_blast"


def infer_legacy_identifiers(character: CharacterInfo, source: RollSource) -> FrozenSet[str]:
    """
    Derive identifiers from class, subclass and source names.

    Legacy compatibility only: used when a record has no explicit feature
    list or source id.
    """
    found: Set[str] = set()
    class_name = character.class_name.lower()
    subclass = character.subclass.lower()
    source_name = source.name.lower()

    if not character.features:
        if "rogue" in class_name:
            found.add(FeatureId.SNEAK_ATTACK.value)
        if "warlock" in class_name:
            found.add(FeatureId.AGONIZING_BLAST.value)
        if "champion" in subclass:
            found.add(FeatureId.IMPROVED_CRITICAL.value)
            if character.level >= 15:
                found.add(FeatureId.SUPERIOR_CRITICAL.value)

    if source.source_id is None:
        if "eldritch blast" in source_name:
            found.add(SourceId.ELDRITCH_BLAST.value)
        elif "sneak" in source_name:
            found.add(FeatureId.SNEAK_ATTACK.value)

    return frozenset(found)


def resolve_identifiers(context: RollContext) -> FrozenSet[str]:
    """All feature and source identifiers that apply to this roll."""
    ids = set(context.character.features)
    if context.source.source_id:
        ids.add(context.source.source_id)
    ids |= infer_legacy_identifiers(context.character, context.source)
    return frozenset(ids)


def has_feature(context: RollContext, feature: FeatureId) -> bool:
    return feature.value in resolve_identifiers(context)


def source_is(context: RollContext, source_id: SourceId) -> bool:
    if context.source.source_id is not None:
        return context.source.source_id == source_id.value
    return source_id.value in infer_legacy_identifiers(context.character, context.source)
