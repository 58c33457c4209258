"""
EVM storage slot labeling.

Recovers variable names, mapping keys, array indices and struct fields for
the storage slots touched by a call, from the compiler's storage layout.
"""

# Configuration and errors
from .config import ExploreConfig
from .exceptions import ConfigError, EvmStateError, InconsistentStateDiffError, LayoutError

# Layout
from .layout import (
    ContainerRoot,
    Located,
    PathSegment,
    PathSegmentKind,
    StorageLayout,
    StorageLayoutDescriptor,
    TypeKind,
)

# Inputs
from .state_diff import (
    AccountStateDiff,
    CallCapture,
    IntrinsicDiff,
    SlotAccessObservation,
    parse_state_diff,
)

# Engine
from .potential_keys import MappingKeyCandidate, extract_potential_keys
from .slot_matcher import (
    ArrayMatch,
    ExactMatch,
    MappingMatch,
    SlotMatcher,
    SlotMatchResult,
    Unresolved,
    match_slots,
)
from .labeling import (
    LabeledState,
    LabeledVariableAccess,
    TraceEntry,
    TraceStateResult,
    label_state_diff,
)

# Facades
from .tracer import Tracer, trace_state
from .watcher import StateChange, StateWatcher
from .logging_config import configure_logging


__all__ = [
    # Configuration and errors
    "ExploreConfig",
    "EvmStateError",
    "ConfigError",
    "LayoutError",
    "InconsistentStateDiffError",
    # Layout
    "ContainerRoot",
    "Located",
    "PathSegment",
    "PathSegmentKind",
    "StorageLayout",
    "StorageLayoutDescriptor",
    "TypeKind",
    # Inputs
    "AccountStateDiff",
    "CallCapture",
    "IntrinsicDiff",
    "SlotAccessObservation",
    "parse_state_diff",
    # Engine
    "MappingKeyCandidate",
    "extract_potential_keys",
    "SlotMatcher",
    "SlotMatchResult",
    "ExactMatch",
    "MappingMatch",
    "ArrayMatch",
    "Unresolved",
    "match_slots",
    "LabeledState",
    "LabeledVariableAccess",
    "TraceEntry",
    "TraceStateResult",
    "label_state_diff",
    # Facades
    "Tracer",
    "trace_state",
    "StateChange",
    "StateWatcher",
    "configure_logging",
]
