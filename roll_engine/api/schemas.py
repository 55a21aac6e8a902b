"""
Request models for the roll API.

Each model converts itself into the engine's immutable value objects with
`to_model()`.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from roll_engine.core.dice_parser import parse_dice_expression
from roll_engine.core.models import (
    ApplicationTiming,
    CharacterInfo,
    Environment,
    ModifierSource,
    ModifierType,
    RollContext,
    RollModifier,
    RollSource,
    RollType,
    SourceType,
    TargetInfo,
)


class CharacterSchema(BaseModel):
    """Character stats used by modifier resolvers."""
    id: str = Field(..., description="Character identifier")
    level: int = Field(1, ge=1, le=20)
    ability_scores: Dict[str, int] = Field(default_factory=dict, description="e.g. {'strength': 16}")
    proficiency_bonus: Optional[int] = Field(None, ge=0, le=10, description="Defaults to the level-based bonus")
    class_name: str = ""
    subclass: str = ""
    features: List[str] = Field(default_factory=list, description="Feature ids such as 'sneak_attack'")
    skill_proficiencies: List[str] = Field(default_factory=list)
    saving_throw_proficiencies: List[str] = Field(default_factory=list)
    expertise: List[str] = Field(default_factory=list)
    weapon_proficiencies: List[str] = Field(default_factory=list)
    equipped_items: List[str] = Field(default_factory=list)

    def to_model(self) -> CharacterInfo:
        return CharacterInfo(
            id=self.id,
            level=self.level,
            ability_scores=dict(self.ability_scores),
            proficiency_bonus=self.proficiency_bonus,
            class_name=self.class_name,
            subclass=self.subclass,
            features=frozenset(self.features),
            skill_proficiencies=frozenset(self.skill_proficiencies),
            saving_throw_proficiencies=frozenset(self.saving_throw_proficiencies),
            expertise=frozenset(self.expertise),
            weapon_proficiencies=frozenset(self.weapon_proficiencies),
            equipped_items=frozenset(self.equipped_items),
        )


class SourceSchema(BaseModel):
    """The weapon, spell, skill, save or ability being rolled."""
    type: SourceType = SourceType.CUSTOM
    name: str = "Roll"
    tags: List[str] = Field(default_factory=list, description="e.g. ['finesse', 'melee']")
    properties: Dict[str, Any] = Field(default_factory=dict, description="e.g. {'damage': '1d8', 'damage_type': 'slashing'}")
    source_id: Optional[str] = None

    def to_model(self) -> RollSource:
        return RollSource(
            type=self.type,
            name=self.name,
            tags=frozenset(self.tags),
            properties=dict(self.properties),
            source_id=self.source_id,
        )


class EnvironmentSchema(BaseModel):
    advantage: bool = False
    disadvantage: bool = False
    hidden: bool = False
    blessed: bool = False
    inspired: bool = False
    guidance: bool = False
    flanking: bool = False
    ally_adjacent: bool = False
    target_prone: bool = False
    cover: Optional[Literal["half", "three_quarters"]] = None
    conditions: List[str] = Field(default_factory=list)

    def to_model(self) -> Environment:
        data = self.model_dump()
        data["conditions"] = tuple(self.conditions)
        return Environment(**data)


class TargetSchema(BaseModel):
    ac: Optional[int] = Field(None, ge=0, le=40)
    save_bonus: Optional[int] = None
    conditions: List[str] = Field(default_factory=list, description="e.g. ['prone', 'resistant_fire']")

    def to_model(self) -> TargetInfo:
        return TargetInfo(ac=self.ac, save_bonus=self.save_bonus, conditions=tuple(self.conditions))


class ContextSchema(BaseModel):
    character: CharacterSchema
    source: SourceSchema = Field(default_factory=SourceSchema)
    environment: EnvironmentSchema = Field(default_factory=EnvironmentSchema)
    target: Optional[TargetSchema] = None

    def to_model(self) -> RollContext:
        return RollContext(
            character=self.character.to_model(),
            source=self.source.to_model(),
            environment=self.environment.to_model(),
            target=self.target.to_model() if self.target else None,
        )


class ModifierSchema(BaseModel):
    """A roll modifier; dice values are given in notation ("1d4")."""
    id: str
    name: str
    source: ModifierSource = ModifierSource.CUSTOM
    type: ModifierType = ModifierType.FLAT_BONUS
    value: Union[int, str] = 0
    application: ApplicationTiming = ApplicationTiming.BEFORE_ROLL
    stacks: bool = False
    priority: int = 50
    description: str = ""
    roll_types: List[RollType] = Field(default_factory=list, description="Empty applies to every roll type")

    def to_model(self) -> RollModifier:
        value = self.value
        if isinstance(value, str) and self.type == ModifierType.DICE_BONUS:
            value = parse_dice_expression(value)
        return RollModifier(
            id=self.id,
            name=self.name,
            source=self.source,
            type=self.type,
            value=value,
            application=self.application,
            stacks=self.stacks,
            priority=self.priority,
            description=self.description,
            roll_types=frozenset(self.roll_types),
        )


class ExpressionRequest(BaseModel):
    """Dice notation to parse or validate."""
    expression: str = Field(..., description="e.g. '1d20+5' or 'attack:1d20+5,damage:1d8+3'")


class RollRequest(BaseModel):
    """A roll to analyze or execute."""
    context: ContextSchema
    type: RollType = RollType.RAW
    expression: Optional[str] = Field(None, description="Defaults depend on the roll type")
    name: Optional[str] = None
    modifiers: List[ModifierSchema] = Field(default_factory=list)
    critical_hit: bool = Field(False, description="Damage for an attack that was already a critical hit")


class AttackRequest(BaseModel):
    """Attack roll followed by damage, critical when the attack crits."""
    context: ContextSchema
    attack_expression: str = "1d20"
    damage_expression: Optional[str] = Field(None, description="Defaults to the source's damage property, then 1d6")


class ModifierListRequest(BaseModel):
    modifiers: List[ModifierSchema]
