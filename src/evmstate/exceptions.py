"""
Exceptions raised by the storage labeling engine.

Unresolvable slots are never errors; these are reserved for broken
preconditions: invalid configuration, malformed layout metadata and
structurally inconsistent state diffs.
"""


class EvmStateError(ValueError):
    """Base class for all evmstate errors."""


class ConfigError(EvmStateError):
    """Raised at setup time when an exploration bound is invalid."""


class LayoutError(EvmStateError):
    """Raised when compiler storage layout metadata cannot be interpreted."""


class InconsistentStateDiffError(EvmStateError):
    """
    Raised when a state diff is structurally inconsistent.

    For example, a slot carrying a next value without a current value.
    """

    def __init__(self, address: str, slot: str, reason: str) -> None:
        self.address = address
        self.slot = slot
        self.reason = reason
        super().__init__(f"Inconsistent state diff for {address} at slot {slot}: {reason}")
