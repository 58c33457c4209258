"""
Call-level facade over the labeling engine.

A Tracer holds the storage layouts and ABIs of the contracts it knows
about, keyed by address, and labels call captures against them. Layouts are
parsed once per address and shared read-only between calls.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from .config import ExploreConfig
from .hexutils import normalize_address
from .labeling import TraceStateResult, label_state_diff
from .layout import StorageLayout
from .potential_keys import extract_potential_keys
from .state_diff import CallCapture

logger = structlog.get_logger()

LayoutSource = Union[StorageLayout, Mapping[str, Any]]


class Tracer:
    """
    Labels the state changes of calls.

    Args:
        layouts: Storage layouts by contract address, as StorageLayout objects
            or raw solc `storageLayout` dictionaries
        abis: ABI function fragments by contract address
        config: Exploration bounds applied to every call
    """

    def __init__(
        self,
        layouts: Optional[Mapping[str, LayoutSource]] = None,
        abis: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
        config: Optional[ExploreConfig] = None,
    ) -> None:
        self.config = config or ExploreConfig()
        self._layouts: Dict[str, StorageLayout] = {}
        self._abis: Dict[str, List[Mapping[str, Any]]] = {}

        for address, layout in (layouts or {}).items():
            self.register_layout(address, layout)
        for address, abi in (abis or {}).items():
            self.register_abi(address, abi)

    def register_layout(self, address: str, layout: LayoutSource) -> StorageLayout:
        """
        Register the storage layout of a contract.

        Raw dictionaries are parsed immediately so malformed metadata fails
        here rather than in the middle of a trace.

        Raises:
            LayoutError: If the layout metadata is malformed
        """
        address = normalize_address(address)
        if not isinstance(layout, StorageLayout):
            layout = StorageLayout.from_solc(layout)
        self._layouts[address] = layout
        logger.debug("Registered storage layout", address=address, variables=len(layout.variables))
        return layout

    def register_abi(self, address: str, abi: Sequence[Mapping[str, Any]]) -> None:
        functions = [fragment for fragment in abi if fragment.get("type", "function") == "function"]
        self._abis[normalize_address(address)] = functions

    def layout_for(self, address: str) -> Optional[StorageLayout]:
        return self._layouts.get(normalize_address(address))

    def abi_for(self, address: Optional[str]) -> List[Mapping[str, Any]]:
        if not address:
            return []
        return self._abis.get(normalize_address(address), [])

    def trace(
        self,
        capture: CallCapture,
        known_lengths: Optional[Mapping[str, Mapping[int, int]]] = None,
    ) -> TraceStateResult:
        """
        Label the state changes of one call.

        Args:
            capture: Everything captured about the call
            known_lengths: Dynamic array lengths per address, by base slot

        Returns:
            TraceStateResult keyed by lowercase address
        """
        candidates = extract_potential_keys(
            capture.touched_addresses,
            struct_logs=capture.struct_logs,
            calldata=capture.calldata,
            abi_functions=self.abi_for(capture.to_address),
            decoded_args=capture.decoded_args,
        )
        result = label_state_diff(capture.state_diff, self._layouts, candidates, self.config, known_lengths)
        logger.info(
            "Traced call",
            tx_hash=capture.tx_hash,
            accounts=len(result),
            candidates=len(candidates),
        )
        return result


def trace_state(
    capture: Union[CallCapture, Mapping[str, Any]],
    layouts: Optional[Mapping[str, LayoutSource]] = None,
    abis: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
    config: Optional[ExploreConfig] = None,
    known_lengths: Optional[Mapping[str, Mapping[int, int]]] = None,
) -> TraceStateResult:
    """Label one call without keeping a Tracer around."""
    if not isinstance(capture, CallCapture):
        capture = CallCapture.from_dict(capture)
    return Tracer(layouts=layouts, abis=abis, config=config).trace(capture, known_lengths)
