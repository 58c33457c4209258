"""
Exploration bounds for the slot matching engine.

Every bound accepts the sentinel value -1 to disable it. Bounds are validated
once, when the configuration is built; the engine never falls back to a
default at runtime.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .exceptions import ConfigError

# Configuration constants
UNBOUNDED = -1
DEFAULT_MAPPING_EXPLORATION_LIMIT = 1_000_000
DEFAULT_MAX_MAPPING_DEPTH = 5
DEFAULT_EARLY_TERMINATION_THRESHOLD = 500

ENV_PREFIX = "EVMSTATE_"

# camelCase aliases accepted by from_dict
_ALIASES = {
    "mappingExplorationLimit": "mapping_exploration_limit",
    "maxMappingDepth": "max_mapping_depth",
    "earlyTerminationThreshold": "early_termination_threshold",
}

# Smallest accepted value per bound (besides the sentinel)
_MINIMUMS = {
    "mapping_exploration_limit": 0,
    "max_mapping_depth": 1,
    "early_termination_threshold": 1,
}


@dataclass(frozen=True)
class ExploreConfig:
    """
    Bounds applied while deriving mapping and array slots.

    Attributes:
        mapping_exploration_limit: Maximum number of key combinations tried per
            top-level mapping variable within one call. 0 skips mapping
            derivation entirely.
        max_mapping_depth: Maximum number of nested container levels (mapping
            keys, nested arrays) followed from a root mapping.
        early_termination_threshold: Stop trying candidates for a variable once
            it has resolved this many distinct slots.
    """

    mapping_exploration_limit: int = DEFAULT_MAPPING_EXPLORATION_LIMIT
    max_mapping_depth: int = DEFAULT_MAX_MAPPING_DEPTH
    early_termination_threshold: int = DEFAULT_EARLY_TERMINATION_THRESHOLD

    def __post_init__(self) -> None:
        for name, minimum in _MINIMUMS.items():
            value = getattr(self, name)
            # bool is an int subclass but never a meaningful bound
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value != UNBOUNDED and value < minimum:
                raise ConfigError(
                    f"{name} must be >= {minimum} or {UNBOUNDED} (unbounded), got {value}"
                )

    def exploration_exhausted(self, explored: int) -> bool:
        """Whether `explored` key combinations already use up the budget."""
        limit = self.mapping_exploration_limit
        return limit != UNBOUNDED and explored >= limit

    def depth_allows(self, level: int) -> bool:
        """Whether a container at nesting `level` (root mapping is 1) may be explored."""
        depth = self.max_mapping_depth
        return depth == UNBOUNDED or level <= depth

    def threshold_reached(self, matches: int) -> bool:
        """Whether a variable with `matches` resolved slots should stop exploring."""
        threshold = self.early_termination_threshold
        return threshold != UNBOUNDED and matches >= threshold

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ExploreConfig":
        """
        Build a configuration from a mapping of bound names to values.

        Both snake_case and camelCase names are accepted; missing or None
        values take the defaults.

        Raises:
            ConfigError: If a key is unknown or a value is invalid
        """
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigError(f"Unknown exploration setting: {key}")
            if value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExploreConfig":
        """
        Build a configuration from EVMSTATE_* environment variables.

        Raises:
            ConfigError: If a variable does not hold an integer
        """
        environ = os.environ if environ is None else environ
        kwargs: Dict[str, int] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            try:
                kwargs[f.name] = int(raw, 0)
            except ValueError as e:
                raise ConfigError(f"{ENV_PREFIX}{f.name.upper()} is not an integer: {raw!r}") from e
        return cls(**kwargs)
