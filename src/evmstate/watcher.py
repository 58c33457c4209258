"""
Continuous observation of one contract's state changes.

The watcher does no polling itself: the caller feeds it new blocks through
`on_block` and supplies `fetch_block_traces` to retrieve the call captures of
a block.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Iterable, List, Mapping, Optional, Sequence

import structlog

from .config import ExploreConfig
from .exceptions import ConfigError
from .hexutils import normalize_address
from .labeling import LabeledState
from .state_diff import CallCapture
from .tracer import LayoutSource, Tracer

logger = structlog.get_logger()

DEFAULT_MAX_HISTORY = 100


@dataclass(frozen=True)
class StateChange:
    """Labeled state of the watched address after one transaction."""

    tx_hash: Optional[str]
    block: Any
    state: LabeledState

    def to_dict(self) -> dict:
        return {"txHash": self.tx_hash, "block": self.block, "state": self.state.to_dict()}


class StateWatcher:
    """
    Labels every transaction of a block that touches one address.

    Args:
        address: The watched contract address
        fetch_block_traces: Returns the call captures of a block
        on_state_change: Called with each StateChange
        on_error: Called with the exception when fetching a block fails
        layout: Storage layout of the watched contract
        abi: ABI function fragments of the watched contract
        config: Exploration bounds
        max_history: Number of most recent changes kept in `changes`
    """

    def __init__(
        self,
        address: str,
        fetch_block_traces: Callable[[Any], Iterable[CallCapture]],
        on_state_change: Callable[[StateChange], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        layout: Optional[LayoutSource] = None,
        abi: Optional[Sequence[Mapping[str, Any]]] = None,
        config: Optional[ExploreConfig] = None,
        max_history: int = DEFAULT_MAX_HISTORY,
    ) -> None:
        if max_history < 0:
            raise ConfigError(f"max_history must be >= 0, got {max_history}")
        self.address = normalize_address(address)
        self.fetch_block_traces = fetch_block_traces
        self.on_state_change = on_state_change
        self.on_error = on_error
        self.tracer = Tracer(
            layouts={self.address: layout} if layout is not None else None,
            abis={self.address: abi} if abi is not None else None,
            config=config,
        )
        self.changes: Deque[StateChange] = deque(maxlen=max_history)
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop labeling further blocks. Already emitted changes are kept."""
        self._cancelled = True
        logger.info("Stopped watching address", address=self.address)

    def _touches(self, capture: CallCapture) -> bool:
        return self.address in capture.touched_addresses

    def on_block(self, block: Any) -> List[StateChange]:
        """
        Label the transactions of a new block that touch the watched address.

        A failure to fetch the block is reported through `on_error` and
        logged; the block is skipped and earlier results stay untouched.

        Returns:
            The state changes emitted for this block
        """
        if self._cancelled:
            return []

        try:
            captures = list(self.fetch_block_traces(block))
        except Exception as e:
            logger.error("Failed to fetch block traces", block=block, address=self.address, error=str(e))
            if self.on_error is not None:
                self.on_error(e)
            return []

        emitted: List[StateChange] = []
        for capture in captures:
            if self._cancelled:
                break
            if not self._touches(capture):
                continue

            result = self.tracer.trace(capture)
            state = result.get(self.address)
            if state is None:
                continue

            change = StateChange(tx_hash=capture.tx_hash, block=block, state=state)
            self.changes.append(change)
            emitted.append(change)
            self.on_state_change(change)

        logger.debug("Processed block", block=block, address=self.address, changes=len(emitted))
        return emitted
