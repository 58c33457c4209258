"""
Label assembly.

Merges slot matching results with the raw pre/post values into the final
trace: per address, per variable name, a list of entries carrying the
extracted and decoded field values and the path that explains them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import structlog

from .config import ExploreConfig
from .decoding import decode_bytes_slot, decode_primitive, extract_field
from .hexutils import normalize_address, slot_hex, word_hex
from .layout import PathSegment, PathSegmentKind, StorageLayout, TypeKind, render_path
from .potential_keys import MappingKeyCandidate
from .slot_matcher import SlotMatchResult, Unresolved, match_slots
from .state_diff import AccountStateDiff, IntrinsicDiff, SlotAccessObservation

logger = structlog.get_logger()

NO_LAYOUT_NOTE = "Could not label this slot access because no layout was found."


@dataclass(frozen=True)
class TraceValue:
    """Extracted field bytes and their decoded value."""

    hex: str
    decoded: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"hex": self.hex, "decoded": self.decoded}


@dataclass(frozen=True)
class TraceEntry:
    """One labeled field access."""

    current: TraceValue
    next: Optional[TraceValue]
    modified: bool
    path: Tuple[PathSegment, ...]
    full_expression: str
    slots: Tuple[str, ...]
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"current": self.current.to_dict()}
        if self.next is not None:
            result["next"] = self.next.to_dict()
        result["modified"] = self.modified
        result["slots"] = list(self.slots)
        result["path"] = [segment.to_dict() for segment in self.path]
        result["fullExpression"] = self.full_expression
        if self.note is not None:
            result["note"] = self.note
        return result


@dataclass
class LabeledVariableAccess:
    """All labeled accesses of one variable (or generic slot label) within a call."""

    name: str
    type: str
    kind: str
    trace: List[TraceEntry] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return any(entry.modified for entry in self.trace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "kind": self.kind,
            "trace": [entry.to_dict() for entry in self.trace],
        }


@dataclass
class LabeledState:
    """Labeled intrinsics and storage of one account."""

    intrinsics: Dict[str, IntrinsicDiff] = field(default_factory=dict)
    storage: Dict[str, LabeledVariableAccess] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {name: diff.to_dict() for name, diff in self.intrinsics.items()}
        result["storage"] = {name: access.to_dict() for name, access in self.storage.items()}
        return result


class TraceStateResult(dict):
    """
    Address to `LabeledState` map.

    Addresses are normalized to lowercase on every access so lookups work
    with checksum and lowercase forms alike.
    """

    _MISSING = object()

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.update(*args, **kwargs)

    def __setitem__(self, address: str, state: LabeledState) -> None:
        super().__setitem__(normalize_address(address), state)

    def __getitem__(self, address: str) -> LabeledState:
        return super().__getitem__(normalize_address(address))

    def __delitem__(self, address: str) -> None:
        super().__delitem__(normalize_address(address))

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and super().__contains__(normalize_address(address))

    def get(self, address: str, default: Optional[LabeledState] = None) -> Optional[LabeledState]:
        return super().get(normalize_address(address), default)

    def setdefault(self, address: str, default: Optional[LabeledState] = None) -> Optional[LabeledState]:
        return super().setdefault(normalize_address(address), default)

    def pop(self, address: str, default: Any = _MISSING) -> Any:
        if default is TraceStateResult._MISSING:
            return super().pop(normalize_address(address))
        return super().pop(normalize_address(address), default)

    def update(self, *args: Any, **kwargs: Any) -> None:
        for address, state in dict(*args, **kwargs).items():
            self[address] = state

    def to_dict(self) -> Dict[str, Any]:
        return {address: state.to_dict() for address, state in self.items()}


def _decode_word(result: SlotMatchResult, word: bytes) -> Tuple[TraceValue, bool]:
    """
    Extract and decode the field a result describes from one raw word.

    Returns:
        Tuple of (value, whether the word is the length of a long bytes value)
    """
    leaf = result.leaf
    if leaf is None or leaf.kind not in (TypeKind.PRIMITIVE, TypeKind.BYTES):
        return TraceValue(hex=word_hex(word)), False

    if leaf.kind == TypeKind.BYTES:
        if result.path and result.path[-1].kind == PathSegmentKind.BYTES_CHUNK:
            return TraceValue(hex=word_hex(word)), False
        value = decode_bytes_slot(leaf.type_label, word)
        if value.is_long:
            return TraceValue(hex=word_hex(word), decoded=value.length), True
        return TraceValue(hex=word_hex(word), decoded=value.decoded), False

    data = extract_field(word, result.offset, result.size)
    return TraceValue(hex="0x" + data.hex(), decoded=decode_primitive(leaf.type_label, data)), False


def build_entry(observation: SlotAccessObservation, result: SlotMatchResult) -> TraceEntry:
    """Build the trace entry of one matched field."""
    current, current_long = _decode_word(result, observation.current)
    next_value: Optional[TraceValue] = None
    next_long = False
    if observation.next is not None:
        next_value, next_long = _decode_word(result, observation.next)

    path = result.path
    note = result.note
    if current_long or next_long:
        path = path + (PathSegment(PathSegmentKind.BYTES_LENGTH),)
        long_note = "long bytes/string; content stored at keccak256(slot) and not decoded"
        note = f"{note} {long_note}" if note else long_note

    return TraceEntry(
        current=current,
        next=next_value,
        modified=next_value is not None and next_value.hex != current.hex,
        path=path,
        full_expression=render_path(result.name, path),
        slots=(slot_hex(observation.slot),),
        note=note,
    )


def _unlabeled(account: AccountStateDiff, note: str) -> Iterator[Tuple[SlotAccessObservation, SlotMatchResult]]:
    for slot in sorted(account.storage):
        yield account.storage[slot], Unresolved(
            slot=slot, name=f"slot_{slot_hex(slot)}", var_type="bytes32", note=note
        )


def label_account(
    account: AccountStateDiff,
    layout: Optional[StorageLayout],
    candidates: List[MappingKeyCandidate],
    config: Optional[ExploreConfig] = None,
    known_lengths: Optional[Mapping[int, int]] = None,
) -> LabeledState:
    """
    Label the storage accesses and intrinsics of one account.

    Without a layout every slot degrades to a `slot_<hex>` entry.
    """
    state = LabeledState(intrinsics=dict(account.intrinsics))

    if layout is None:
        pairs = list(_unlabeled(account, NO_LAYOUT_NOTE))
        kinds: Dict[str, str] = {}
    else:
        results = match_slots(layout, account.storage, candidates, config, known_lengths)
        pairs = [(account.storage[slot], result) for slot, slot_results in results.items() for result in slot_results]
        kinds = {variable.label: variable.kind.value for variable in layout.variables}

    for observation, result in pairs:
        access = state.storage.get(result.name)
        if access is None:
            access = LabeledVariableAccess(
                name=result.name,
                type=result.var_type,
                kind=kinds.get(result.name, "unknown"),
            )
            state.storage[result.name] = access
        access.trace.append(build_entry(observation, result))

    logger.debug(
        "Labeled account",
        address=account.address,
        slots=len(account.storage),
        variables=len(state.storage),
        has_layout=layout is not None,
    )
    return state


def label_state_diff(
    state_diff: Mapping[str, AccountStateDiff],
    layouts: Mapping[str, StorageLayout],
    candidates: List[MappingKeyCandidate],
    config: Optional[ExploreConfig] = None,
    known_lengths: Optional[Mapping[str, Mapping[int, int]]] = None,
) -> TraceStateResult:
    """
    Label a whole state diff.

    Args:
        state_diff: Account diffs keyed by address
        layouts: Storage layouts keyed by normalized address
        candidates: Ranked candidate keys for the call
        config: Exploration bounds
        known_lengths: Dynamic array lengths per address, by base slot

    Returns:
        TraceStateResult with one LabeledState per address
    """
    known_lengths = {normalize_address(a): lengths for a, lengths in (known_lengths or {}).items()}
    layouts = {normalize_address(a): layout for a, layout in layouts.items()}

    result = TraceStateResult()
    for address, account in state_diff.items():
        address = normalize_address(address)
        result[address] = label_account(
            account,
            layouts.get(address),
            candidates,
            config,
            known_lengths.get(address),
        )
    return result
