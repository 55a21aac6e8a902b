"""
Roll Engine Configuration.

Critical hit rules, timeouts and logging for a RollEngine. Configuration is
owned by the engine instance that receives it; there is no process-wide
default. Named presets cover the common tables (standard 5e, Champion
fighter crit range, Brutal Critical extra dice).
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import json
from pathlib import Path


class CriticalDamageStrategy(str, Enum):
    """How critical hits increase damage."""
    DOUBLE_DICE = "double_dice"        # Roll twice the dice (5e default)
    MAX_BASE_DICE = "max_base_dice"    # Max the base dice, roll the extra
    DOUBLE_TOTAL = "double_total"      # Double the whole damage total


IMPLEMENTED_STRATEGIES = frozenset({CriticalDamageStrategy.DOUBLE_DICE})


class AffectedDice(str, Enum):
    """Which damage dice a critical hit doubles."""
    WEAPON_ONLY = "weapon_only"              # Base dice and on-damage dice (Sneak Attack)
    ALL_DAMAGE = "all_damage"                # Every damage die, including pre-roll bonuses
    EXCLUDE_MODIFIERS = "exclude_modifiers"  # Base expression dice only


@dataclass
class CriticalRules:
    """Critical hit and failure rules."""
    range: List[int] = field(default_factory=lambda: [20])
    failure_range: List[int] = field(default_factory=lambda: [1])
    damage_strategy: CriticalDamageStrategy = CriticalDamageStrategy.DOUBLE_DICE
    affected_dice: AffectedDice = AffectedDice.WEAPON_ONLY
    additional_dice: Optional[str] = None  # Extra dice on a crit, e.g. "1d12" for Brutal Critical

    def to_dict(self) -> Dict[str, Any]:
        return {
            "range": list(self.range),
            "failure_range": list(self.failure_range),
            "damage_strategy": self.damage_strategy.value,
            "affected_dice": self.affected_dice.value,
            "additional_dice": self.additional_dice,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CriticalRules":
        return cls(
            range=list(data.get("range", [20])),
            failure_range=list(data.get("failure_range", [1])),
            damage_strategy=CriticalDamageStrategy(data.get("damage_strategy", "double_dice")),
            affected_dice=AffectedDice(data.get("affected_dice", "weapon_only")),
            additional_dice=data.get("additional_dice"),
        )


@dataclass
class RollEngineConfig:
    """
    Construction-time options for a RollEngine.

    `random_source` is a callable (sides) -> int used instead of the default
    uniform roller. It is never serialized.
    """
    critical_rules: CriticalRules = field(default_factory=CriticalRules)
    enable_pre_roll_analysis: bool = True
    max_execution_time_ms: int = 5000
    enable_logging: bool = False
    random_source: Optional[Callable[[int], int]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {
            "critical_rules": self.critical_rules.to_dict(),
            "enable_pre_roll_analysis": self.enable_pre_roll_analysis,
            "max_execution_time_ms": self.max_execution_time_ms,
            "enable_logging": self.enable_logging,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollEngineConfig":
        """Create config from dictionary."""
        return cls(
            critical_rules=CriticalRules.from_dict(data.get("critical_rules", {})),
            enable_pre_roll_analysis=data.get("enable_pre_roll_analysis", True),
            max_execution_time_ms=data.get("max_execution_time_ms", 5000),
            enable_logging=data.get("enable_logging", False),
        )

    def save_to_file(self, filepath: Path) -> None:
        """Save configuration to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_from_file(cls, filepath: Path) -> "RollEngineConfig":
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)


# Preset configurations for quick setup
PRESET_CONFIGS = {
    "standard": RollEngineConfig(),
    "champion": RollEngineConfig(
        critical_rules=CriticalRules(range=[19, 20]),
    ),
    "brutal": RollEngineConfig(
        critical_rules=CriticalRules(additional_dice="1d12"),
    ),
}


def get_preset(preset_name: str) -> RollEngineConfig:
    """
    Fresh copy of a preset configuration.

    Args:
        preset_name: One of "standard", "champion", or "brutal"

    Raises:
        KeyError: if the preset name is unknown
    """
    if preset_name not in PRESET_CONFIGS:
        raise KeyError(f"Unknown rules preset: {preset_name}")
    return RollEngineConfig.from_dict(PRESET_CONFIGS[preset_name].to_dict())


class ConfigOverride:
    """
    Context manager for temporarily changing an engine's configuration.

    Useful for testing or one-off rolls under different rules.

    Example:
        with ConfigOverride(engine, max_execution_time_ms=100):
            # Short timeout here
            pass
        # Original config is restored
    """

    def __init__(self, engine, **kwargs):
        self.engine = engine
        self.overrides = kwargs
        self.original_config = None

    def __enter__(self) -> RollEngineConfig:
        self.original_config = self.engine.config

        critical_overrides = self.overrides.pop("critical_rules", None)
        new_config = replace(self.original_config, **self.overrides)
        if isinstance(critical_overrides, dict):
            new_config.critical_rules = replace(self.original_config.critical_rules, **critical_overrides)
        elif critical_overrides is not None:
            new_config.critical_rules = critical_overrides

        self.engine.configure(new_config)
        return self.engine.config

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.engine.configure(self.original_config)
        return False
