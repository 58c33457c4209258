"""
Slot matching engine.

Resolves every observed slot of one contract to the variable that lives
there. Passes run in a fixed order and the first pass that explains a slot
wins:

1. exact: fixed-position variables, including every packed field of a slot
2. mapping: slots derived as keccak256(key . base) from candidate keys,
   following nested containers through an explicit worklist
3. array: static arrays by closed-form arithmetic, dynamic arrays and long
   bytes content from keccak256(base) within the observed or known length

Slots no pass explains are reported as unresolved, never as errors.
"""

from collections import deque
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog

from .config import ExploreConfig
from .decoding import decode_bytes_slot, decode_key
from .hexutils import SLOT_SPACE, WORD_SIZE, array_data_slot, mapping_slot, slot_hex
from .layout import (
    ContainerRoot,
    Located,
    PathSegment,
    PathSegmentKind,
    StorageLayout,
    StorageLayoutDescriptor,
    TypeKind,
    render_path,
)
from .potential_keys import MappingKeyCandidate
from .state_diff import SlotAccessObservation

logger = structlog.get_logger()

UNRESOLVED_NOTE = "Could not label this slot access."
LONG_BYTES_CHUNK_NOTE = "raw chunk {index} of long bytes/string content; not decoded"


@dataclass(frozen=True)
class SlotMatchResult:
    """
    One field explained at an observed slot.

    Attributes:
        slot: The observed slot
        name: Top-level variable name, or `slot_<hex>` when unresolved
        var_type: Type label of the top-level variable
        leaf: Descriptor used to decode the field (None when unresolved)
        offset: Byte offset of the field within the slot
        size: Byte size of the field
        path: Steps from the variable to the field
        note: Optional explanation attached to the match
    """

    match_kind: ClassVar[str] = "match"

    slot: int
    name: str
    var_type: str
    leaf: Optional[StorageLayoutDescriptor] = None
    offset: int = 0
    size: int = WORD_SIZE
    path: Tuple[PathSegment, ...] = ()
    note: Optional[str] = None

    @property
    def full_expression(self) -> str:
        return render_path(self.name, self.path)

    @property
    def leaf_type(self) -> str:
        return self.leaf.type_label if self.leaf is not None else "bytes32"


@dataclass(frozen=True)
class ExactMatch(SlotMatchResult):
    match_kind: ClassVar[str] = "exact"


@dataclass(frozen=True)
class MappingMatch(SlotMatchResult):
    match_kind: ClassVar[str] = "mapping"

    keys: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class ArrayMatch(SlotMatchResult):
    match_kind: ClassVar[str] = "array"

    index: Optional[int] = None


@dataclass(frozen=True)
class Unresolved(SlotMatchResult):
    match_kind: ClassVar[str] = "unresolved"


@dataclass(frozen=True)
class _WorkItem:
    container: StorageLayoutDescriptor
    base: int
    level: int
    path: Tuple[PathSegment, ...]


class _Exploration:
    """Per-variable budget accounting for one call."""

    def __init__(self, name: str, config: ExploreConfig) -> None:
        self.name = name
        self.config = config
        self.explored = 0
        self.matches = 0
        self.limit_hit = False
        self.depth_hit = False

    @property
    def stopped(self) -> bool:
        return self.limit_hit or self.config.threshold_reached(self.matches)

    @property
    def budget_left(self) -> Optional[int]:
        limit = self.config.mapping_exploration_limit
        if limit < 0:
            return None
        return max(0, limit - self.explored)

    def spend(self) -> bool:
        """Consume one unit of exploration budget, if any is left."""
        if self.config.exploration_exhausted(self.explored):
            self.limit_hit = True
            return False
        self.explored += 1
        return True


class SlotMatcher:
    """
    Matches the observed slots of one contract within one call.

    Args:
        layout: Storage layout of the contract
        observations: Observed slots, keyed by slot
        candidates: Ranked candidate keys for the call
        config: Exploration bounds
        known_lengths: Dynamic array lengths by base slot, supplied externally
    """

    def __init__(
        self,
        layout: StorageLayout,
        observations: Mapping[int, SlotAccessObservation],
        candidates: List[MappingKeyCandidate],
        config: Optional[ExploreConfig] = None,
        known_lengths: Optional[Mapping[int, int]] = None,
    ) -> None:
        self.layout = layout
        self.observations = observations
        self.candidates = candidates
        self.config = config or ExploreConfig()
        self.known_lengths = dict(known_lengths or {})

        self.remaining: Set[int] = set(observations)
        self.results: Dict[int, List[SlotMatchResult]] = {}
        self._explorations: Dict[str, _Exploration] = {}

    def run(self) -> Dict[int, List[SlotMatchResult]]:
        """
        Run all passes and return the results per observed slot.

        Every observed slot gets at least one result; packed slots get one
        result per field, sorted by byte offset.
        """
        self._match_exact()
        self._match_mappings()
        self._match_arrays()
        self._mark_ambiguous()

        unresolved_note = self._unresolved_note() if self.remaining else UNRESOLVED_NOTE
        for slot in sorted(self.remaining):
            self.results[slot] = [
                Unresolved(slot=slot, name=f"slot_{slot_hex(slot)}", var_type="bytes32", note=unresolved_note)
            ]

        for exploration in self._explorations.values():
            logger.debug(
                "Explored variable",
                variable=exploration.name,
                explored=exploration.explored,
                matches=exploration.matches,
                limit_hit=exploration.limit_hit,
                depth_hit=exploration.depth_hit,
            )
        return {slot: self.results[slot] for slot in sorted(self.results)}

    # Pass 1

    def _match_exact(self) -> None:
        for slot in sorted(self.remaining):
            for variable in self.layout.variables_at(slot):
                self._record(slot, variable, variable.locate(slot - variable.slot), (), ExactMatch)

    # Pass 2

    def _match_mappings(self) -> None:
        for root in self.layout.mapping_roots:
            if not self.remaining:
                return
            self._explore_root(root)

    # Pass 3

    def _match_arrays(self) -> None:
        for variable in self.layout.static_arrays:
            if not self.remaining:
                return
            for slot in self._hits(variable.slot, variable.slot_count):
                self._record(slot, variable, variable.locate(slot - variable.slot), (), ArrayMatch)

        for root in self.layout.dynamic_array_roots + self.layout.bytes_roots:
            if not self.remaining:
                return
            self._explore_root(root)

    def _explore_root(self, root: ContainerRoot) -> None:
        exploration = self._exploration_for(root.variable)
        queue: Deque[_WorkItem] = deque([_WorkItem(root.container, root.slot, 1, root.path)])

        while queue and self.remaining:
            item = queue.popleft()
            # entering a nested container costs one unit
            if item.level > 1 and (exploration.stopped or not exploration.spend()):
                break

            kind = item.container.kind
            if kind == TypeKind.MAPPING:
                self._expand_mapping(item, root.variable, exploration, queue)
            elif kind == TypeKind.DYNAMIC_ARRAY:
                self._expand_array(item, root.variable, exploration, queue)
            elif kind == TypeKind.BYTES:
                self._expand_bytes(item, root.variable, exploration)

    def _expand_mapping(
        self,
        item: _WorkItem,
        variable: StorageLayoutDescriptor,
        exploration: _Exploration,
        queue: Deque[_WorkItem],
    ) -> None:
        mapping = item.container
        value = mapping.value
        if value is None:
            return

        for candidate in self.candidates:
            if not self.remaining or self.config.threshold_reached(exploration.matches):
                return
            if not exploration.spend():
                return

            derived = mapping_slot(candidate.raw, item.base)
            hits = self._hits(derived, value.slot_count)
            if not hits and not value.has_containers:
                continue

            segment = PathSegment(
                PathSegmentKind.MAPPING_KEY,
                key=decode_key(mapping.key_type, candidate.raw),
                key_hex=candidate.hex,
                key_type=mapping.key_type,
            )
            path = item.path + (segment,)
            for slot in hits:
                if self._record(slot, variable, value.locate(slot - derived), path, MappingMatch):
                    exploration.matches += 1
            self._push_nested(queue, value, derived, item.level, path, exploration)

    def _expand_array(
        self,
        item: _WorkItem,
        variable: StorageLayoutDescriptor,
        exploration: _Exploration,
        queue: Deque[_WorkItem],
    ) -> None:
        array = item.container
        length = self._length_at(item.base)
        if length is None or array.value is None:
            return

        data = array_data_slot(item.base)
        for slot in self._hits(data, array.data_slot_count(length)):
            located = array.locate_element(slot - data, length)
            if self._record(slot, variable, located, item.path, self._derived_kind(item.path)):
                exploration.matches += 1

        element = array.value
        if not element.has_containers:
            return
        for index in range(length):
            if exploration.stopped:
                return
            budget_left = exploration.budget_left
            if budget_left is not None and len(queue) >= budget_left:
                exploration.limit_hit = True
                return
            rel, _ = array.element_position(index)
            segment = PathSegment(PathSegmentKind.ARRAY_INDEX, index=index)
            self._push_nested(queue, element, data + rel, item.level, item.path + (segment,), exploration)

    def _expand_bytes(self, item: _WorkItem, variable: StorageLayoutDescriptor, exploration: _Exploration) -> None:
        observation = self.observations.get(item.base)
        if observation is None:
            return

        words = [observation.current] if observation.next is None else [observation.current, observation.next]
        lengths = [
            value.length
            for value in (decode_bytes_slot(item.container.type_label, word) for word in words)
            if value.is_long
        ]
        if not lengths:
            return

        data = array_data_slot(item.base)
        chunks = -(-max(lengths) // WORD_SIZE)
        for slot in self._hits(data, chunks):
            index = slot - data
            segment = PathSegment(PathSegmentKind.BYTES_CHUNK, index=index)
            located = [Located(item.container, 0, (segment,))]
            note = LONG_BYTES_CHUNK_NOTE.format(index=index)
            if self._record(slot, variable, located, item.path, self._derived_kind(item.path), note=note):
                exploration.matches += 1

    def _push_nested(
        self,
        queue: Deque[_WorkItem],
        value: StorageLayoutDescriptor,
        base: int,
        level: int,
        path: Tuple[PathSegment, ...],
        exploration: _Exploration,
    ) -> None:
        """Queue the containers living inside a derived value one level deeper."""
        if not value.has_containers:
            return
        for inner, rel, inner_path in value.containers():
            inner_base = (base + rel) % SLOT_SPACE
            # arrays and bytes are only followed when their length can be known
            if inner.kind != TypeKind.MAPPING and self._length_at(inner_base) is None:
                continue
            if not self.config.depth_allows(level + 1):
                exploration.depth_hit = True
                continue
            queue.append(_WorkItem(inner, inner_base, level + 1, path + inner_path))

    # Ambiguity

    def _mark_ambiguous(self) -> None:
        """Note mapping matches that a dynamic array index would explain as well."""
        hypotheses = []
        for root in self.layout.dynamic_array_roots:
            length = self._length_at(root.slot)
            if length:
                hypotheses.append((root, length, array_data_slot(root.slot)))
        if not hypotheses:
            return

        for slot, results in self.results.items():
            if not any(isinstance(result, MappingMatch) for result in results):
                continue
            for root, length, data in hypotheses:
                if not 0 <= slot - data < root.container.data_slot_count(length):
                    continue
                located = root.container.locate_element(slot - data, length)
                if not located:
                    continue
                array_expr = render_path(root.variable.label, root.path + located[0].path[:1])
                self.results[slot] = [
                    replace(
                        result,
                        note=f"Ambiguous slot: explained as {result.full_expression} (kept) "
                        f"and as {array_expr}.",
                    )
                    if isinstance(result, MappingMatch)
                    else result
                    for result in results
                ]
                break

    # Helpers

    def _exploration_for(self, variable: StorageLayoutDescriptor) -> _Exploration:
        exploration = self._explorations.get(variable.label)
        if exploration is None:
            exploration = _Exploration(variable.label, self.config)
            self._explorations[variable.label] = exploration
        return exploration

    def _length_at(self, base: int) -> Optional[int]:
        if base in self.known_lengths:
            return self.known_lengths[base]
        observation = self.observations.get(base)
        if observation is None:
            return None
        return observation.max_value

    def _hits(self, base: int, span: int) -> List[int]:
        """Remaining slots within [base, base + span), in ascending order."""
        if span <= 0:
            return []
        if span <= len(self.remaining):
            return [slot for slot in range(base, base + span) if slot in self.remaining]
        return sorted(slot for slot in self.remaining if base <= slot < base + span)

    @staticmethod
    def _derived_kind(path: Tuple[PathSegment, ...]) -> type:
        if any(segment.kind == PathSegmentKind.MAPPING_KEY for segment in path):
            return MappingMatch
        return ArrayMatch

    def _record(
        self,
        slot: int,
        variable: StorageLayoutDescriptor,
        located: Iterable[Located],
        prefix: Tuple[PathSegment, ...],
        result_cls: type,
        note: Optional[str] = None,
    ) -> bool:
        """Store results for a slot and mark it resolved. Returns False if nothing was located."""
        results: List[SlotMatchResult] = []
        for found in located:
            path = prefix + found.path
            extra: Dict[str, Any] = {}
            if result_cls is MappingMatch:
                extra["keys"] = tuple(s.key for s in path if s.kind == PathSegmentKind.MAPPING_KEY)
            elif result_cls is ArrayMatch:
                indices = [
                    s.index for s in path if s.kind in (PathSegmentKind.ARRAY_INDEX, PathSegmentKind.BYTES_CHUNK)
                ]
                extra["index"] = indices[-1] if indices else None
            results.append(
                result_cls(
                    slot=slot,
                    name=variable.label,
                    var_type=variable.type_label,
                    leaf=found.leaf,
                    offset=found.offset,
                    size=found.size,
                    path=path,
                    note=note,
                    **extra,
                )
            )
        if not results:
            return False

        self.results.setdefault(slot, []).extend(results)
        self.results[slot].sort(key=lambda result: result.offset)
        self.remaining.discard(slot)
        return True

    def _unresolved_note(self) -> str:
        note = UNRESOLVED_NOTE
        limited = sorted(e.name for e in self._explorations.values() if e.limit_hit)
        deep = sorted(e.name for e in self._explorations.values() if e.depth_hit)
        if limited:
            note += f" Exploration stopped at the limit of {self.config.mapping_exploration_limit} for: {', '.join(limited)}."
            logger.warning("Mapping exploration limit reached", variables=limited)
        if deep:
            note += f" Nested containers deeper than {self.config.max_mapping_depth} were not explored for: {', '.join(deep)}."
            logger.warning("Mapping depth limit reached", variables=deep)
        return note


def match_slots(
    layout: StorageLayout,
    observations: Mapping[int, SlotAccessObservation],
    candidates: List[MappingKeyCandidate],
    config: Optional[ExploreConfig] = None,
    known_lengths: Optional[Mapping[int, int]] = None,
) -> Dict[int, List[SlotMatchResult]]:
    """Resolve every observed slot of one contract. See `SlotMatcher`."""
    return SlotMatcher(layout, observations, candidates, config, known_lengths).run()
