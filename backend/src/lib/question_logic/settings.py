"""
Engine settings loader.

Loads tuning constants for the question logic engine from
config/question_logic.yaml. Every value has a built-in default so a missing
file is not an error; a file that exists but cannot be parsed is.

Usage:
    from src.lib.question_logic.settings import load_settings

    settings = load_settings()
    ttl = settings.cache.trigger_ttl_seconds
"""

import logging
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml

from src.config import get_question_logic_config_path
from src.lib.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheSettings:
    trigger_ttl_seconds: int = 300
    frequency_ttl_seconds: int = 120
    max_entries: int = 1024


@dataclass
class FrequencySettings:
    default_target: int = 100
    default_window: str = "daily"
    analytics_lookback_days: int = 7
    recommendation_lookback_days: int = 14
    min_presentations_for_adaptive: int = 5
    adaptive_noise_floor: float = 0.05
    min_multiplier: float = 0.5
    max_multiplier: float = 2.0
    response_rate_threshold: float = 30.0
    rating_threshold: float = 3.0
    adjustment_sensitivity: float = 0.1


@dataclass
class TriggerSettings:
    # When true the customer-behavior rating boost is capped at 1.0.
    clamp_behavior_boost: bool = False


@dataclass
class HarmonizationSettings:
    default_strategy: str = "adaptive"
    max_frequency_ratio: float = 2.0
    min_frequency_interval: float = 2
    overlap_ratio: float = 2.0
    high_severity_ratio: float = 1.5
    collision_window_seconds: int = 3600
    high_priority_level: int = 4
    performance_sample_size: int = 30
    performance_budget_ms: int = 500


@dataclass
class BalancingSettings:
    min_priority_level: int = 1
    max_priority_level: int = 5
    short_boost: float = 1.5
    medium_boost: float = 1.0
    long_boost: float = 0.5
    chars_per_second: float = 4.2
    min_question_seconds: float = 15.0
    default_priority_threshold: int = 3
    performance_sample_size: int = 50
    performance_budget_ms: int = 1000

    @property
    def time_sensitivity_thresholds(self) -> Dict[str, float]:
        return {"short": self.short_boost, "medium": self.medium_boost, "long": self.long_boost}


@dataclass
class QuestionLogicSettings:
    """Top-level settings object, one attribute per YAML section."""

    cache: CacheSettings = field(default_factory=CacheSettings)
    frequency: FrequencySettings = field(default_factory=FrequencySettings)
    triggers: TriggerSettings = field(default_factory=TriggerSettings)
    harmonization: HarmonizationSettings = field(default_factory=HarmonizationSettings)
    balancing: BalancingSettings = field(default_factory=BalancingSettings)
    source_path: Optional[str] = None

    @classmethod
    def from_yaml(cls, data: Dict[str, Any], source_path: Optional[str] = None) -> "QuestionLogicSettings":
        """
        Create settings from parsed YAML data.

        Unknown sections and keys are ignored.

        Args:
            data: Parsed YAML mapping
            source_path: File the data came from, kept for diagnostics

        Returns:
            QuestionLogicSettings instance
        """
        return cls(
            cache=_section(CacheSettings, data.get("cache")),
            frequency=_section(FrequencySettings, data.get("frequency")),
            triggers=_section(TriggerSettings, data.get("triggers")),
            harmonization=_section(HarmonizationSettings, data.get("harmonization")),
            balancing=_section(BalancingSettings, data.get("balancing")),
            source_path=source_path,
        )


def _section(section_cls: Type[T], raw: Optional[Dict[str, Any]]) -> T:
    if raw is None:
        return section_cls()
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Settings section for {section_cls.__name__} must be a mapping",
            details={"section": section_cls.__name__},
        )
    known = {f.name for f in fields(section_cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        logger.warning(
            "Ignoring unknown settings keys: %s", sorted(unknown),
            extra={"section": section_cls.__name__},
        )
    return section_cls(**{k: v for k, v in raw.items() if k in known})


# Thread safety lock for initialization
_init_lock = threading.Lock()
_settings: Optional[QuestionLogicSettings] = None


def load_settings(path: Optional[Path] = None, force_reload: bool = False) -> QuestionLogicSettings:
    """
    Load engine settings from YAML, caching the result.

    Args:
        path: Settings file (defaults to QUESTION_LOGIC_CONFIG_PATH or config/question_logic.yaml)
        force_reload: Re-read the file even if settings were already loaded

    Returns:
        QuestionLogicSettings

    Raises:
        ConfigurationError: If the file exists but cannot be read or parsed
    """
    global _settings

    if _settings is not None and not force_reload and path is None:
        return _settings

    with _init_lock:
        if _settings is not None and not force_reload and path is None:
            return _settings

        settings_path = path or get_question_logic_config_path()

        if not settings_path.exists():
            logger.info('Settings file %s not found, using built-in defaults', settings_path)
            loaded = QuestionLogicSettings()
        else:
            try:
                with open(settings_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(
                    f"Failed to read settings file {settings_path}: {e}",
                    details={"path": str(settings_path)},
                ) from e

            if not isinstance(data, dict):
                raise ConfigurationError(
                    f"Settings file {settings_path} must contain a mapping",
                    details={"path": str(settings_path)},
                )
            try:
                loaded = QuestionLogicSettings.from_yaml(data, source_path=str(settings_path))
            except TypeError as e:
                raise ConfigurationError(f"Invalid settings in {settings_path}: {e}") from e
            logger.info('Loaded question logic settings from %s', settings_path)

        if path is None:
            _settings = loaded
        return loaded


def reset_settings() -> None:
    """Drop cached settings. Intended for tests."""
    global _settings
    with _init_lock:
        _settings = None
