"""
Modifier Registry.

Long-lived modifiers known to a RollEngine: per character, per item, and a
temporary list for spell effects and other short-lived bonuses.

Concurrency contract: single writer, read during rolls. Register character
and item modifiers when data is loaded and clear temporary modifiers between
turns. Rolls only read the registry, so no locking is done; mutating it while
a roll is in flight is not supported.
"""
from typing import Dict, Iterable, List

from roll_engine.core.models import RollContext, RollModifier


class ModifierRegistry:
    """Character, item and temporary modifier store."""

    def __init__(self):
        self._character: Dict[str, List[RollModifier]] = {}
        self._items: Dict[str, List[RollModifier]] = {}
        self._temporary: List[RollModifier] = []

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def register_character(self, character_id: str, modifiers: Iterable[RollModifier]) -> None:
        """Replace the modifiers registered for a character."""
        self._character[character_id] = list(modifiers)

    def register_item(self, item_id: str, modifiers: Iterable[RollModifier]) -> None:
        """Replace the modifiers registered for an item."""
        self._items[item_id] = list(modifiers)

    def add_temporary(self, modifiers: Iterable[RollModifier]) -> None:
        self._temporary.extend(modifiers)

    def clear_temporary(self) -> None:
        self._temporary = []

    def clear(self) -> None:
        """Drop everything."""
        self._character.clear()
        self._items.clear()
        self._temporary = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def character_modifiers(self, character_id: str) -> List[RollModifier]:
        return list(self._character.get(character_id, []))

    def item_modifiers(self, item_id: str) -> List[RollModifier]:
        return list(self._items.get(item_id, []))

    @property
    def temporary(self) -> List[RollModifier]:
        return list(self._temporary)

    def candidates(self, context: RollContext) -> List[RollModifier]:
        """
        Registered modifiers relevant to a roll, before conditions are checked.

        Item modifiers apply for items the character has equipped and for the
        item being rolled (source_id).
        """
        modifiers = self.character_modifiers(context.character.id)

        item_ids = list(context.character.equipped_items)
        source_id = context.source.source_id
        if source_id and source_id not in item_ids:
            item_ids.append(source_id)
        for item_id in sorted(item_ids):
            modifiers.extend(self.item_modifiers(item_id))

        modifiers.extend(self._temporary)
        return modifiers

    def to_dict(self) -> Dict[str, object]:
        """Modifier ids per bucket, for diagnostics."""
        return {
            "character": {cid: [m.id for m in mods] for cid, mods in self._character.items()},
            "items": {iid: [m.id for m in mods] for iid, mods in self._items.items()},
            "temporary": [m.id for m in self._temporary],
        }
