"""
Roll Engine - Test Configuration and Fixtures
Shared test utilities and fixtures for pytest.
"""
import pytest
from typing import Iterable, Optional
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roll_engine.core.dice import SequenceRandomSource
from roll_engine.core.dice_parser import parse_any_dice_expression
from roll_engine.core.models import (
    CharacterInfo,
    Environment,
    RollContext,
    RollDefinition,
    RollSource,
    RollType,
    SourceType,
    TargetInfo,
)
from roll_engine.core.roll_engine import RollEngine
from roll_engine.core.rules_config import CriticalRules, RollEngineConfig


# ==================== Character Fixtures ====================

@pytest.fixture
def fighter() -> CharacterInfo:
    """Level 5 fighter, proficient with martial weapons."""
    return CharacterInfo(
        id="player-1",
        level=5,
        ability_scores={
            "strength": 16,
            "dexterity": 12,
            "constitution": 14,
            "intelligence": 10,
            "wisdom": 13,
            "charisma": 11,
        },
        class_name="Fighter",
        skill_proficiencies=frozenset({"athletics", "perception"}),
        saving_throw_proficiencies=frozenset({"strength", "constitution"}),
        weapon_proficiencies=frozenset({"martial", "simple"}),
    )


@pytest.fixture
def rogue() -> CharacterInfo:
    """Level 5 rogue with Sneak Attack and Stealth expertise."""
    return CharacterInfo(
        id="player-2",
        level=5,
        ability_scores={"strength": 10, "dexterity": 18, "charisma": 12},
        class_name="Rogue",
        features=frozenset({"sneak_attack"}),
        skill_proficiencies=frozenset({"stealth", "sleight_of_hand"}),
        expertise=frozenset({"stealth"}),
        weapon_proficiencies=frozenset({"rapier", "shortbow", "simple"}),
    )


@pytest.fixture
def blank_character() -> CharacterInfo:
    """Character with no stats, so no resolver emits anything."""
    return CharacterInfo(id="blank")


# ==================== Source Fixtures ====================

@pytest.fixture
def longsword() -> RollSource:
    return RollSource(
        type=SourceType.WEAPON,
        name="Longsword",
        tags=frozenset({"martial", "melee", "versatile"}),
        properties={"damage": "1d8", "damage_type": "slashing"},
        source_id="longsword",
    )


@pytest.fixture
def rapier() -> RollSource:
    return RollSource(
        type=SourceType.WEAPON,
        name="Rapier",
        tags=frozenset({"martial", "melee", "finesse"}),
        properties={"damage": "1d8", "damage_type": "piercing"},
        source_id="rapier",
    )


@pytest.fixture
def custom_source() -> RollSource:
    return RollSource(type=SourceType.CUSTOM, name="Roll")


# ==================== Factories ====================

@pytest.fixture
def make_context():
    """Factory for roll contexts."""
    def _make(
        character: CharacterInfo,
        source: RollSource,
        environment: Optional[Environment] = None,
        target: Optional[TargetInfo] = None,
    ) -> RollContext:
        return RollContext(
            character=character,
            source=source,
            environment=environment or Environment(),
            target=target,
        )
    return _make


@pytest.fixture
def make_definition():
    """Factory for roll definitions from notation."""
    def _make(
        expression: str,
        roll_type: RollType,
        context: RollContext,
        critical_hit: bool = False,
        modifiers=(),
    ) -> RollDefinition:
        return RollDefinition(
            id=f"test_{roll_type.value}",
            type=roll_type,
            name="Test Roll",
            base_expression=parse_any_dice_expression(expression),
            context=context,
            modifiers=tuple(modifiers),
            critical_hit=critical_hit,
        )
    return _make


@pytest.fixture
def forced_engine():
    """Factory for engines that roll a fixed dice sequence."""
    def _make(values: Iterable[int], critical_rules: Optional[CriticalRules] = None, **kwargs) -> RollEngine:
        config = RollEngineConfig(
            critical_rules=critical_rules or CriticalRules(),
            random_source=SequenceRandomSource(values),
            **kwargs,
        )
        return RollEngine(config)
    return _make


# ==================== Test Categories ====================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
