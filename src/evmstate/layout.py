"""
Storage layout adapter.

This module turns the `storageLayout` metadata emitted by solc into immutable
descriptors that know the slot arithmetic of every declared variable, struct
member, mapping value and array element.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import structlog

from .exceptions import LayoutError
from .hexutils import WORD_SIZE

logger = structlog.get_logger()

_STATIC_LENGTH_RE = re.compile(r"\[(\d+)\]$")


class TypeKind(str, Enum):
    PRIMITIVE = "primitive"
    MAPPING = "mapping"
    STATIC_ARRAY = "static_array"
    DYNAMIC_ARRAY = "dynamic_array"
    STRUCT = "struct"
    BYTES = "bytes"


class PathSegmentKind(str, Enum):
    STRUCT_FIELD = "struct_field"
    ARRAY_INDEX = "array_index"
    MAPPING_KEY = "mapping_key"
    ARRAY_LENGTH = "array_length"
    BYTES_LENGTH = "bytes_length"
    BYTES_CHUNK = "bytes_chunk"


@dataclass(frozen=True)
class PathSegment:
    """
    One step from a top-level variable towards a stored leaf value.

    Attributes:
        kind: What kind of step this is
        name: Member name for struct fields
        index: Element index for array elements and long bytes chunks
        key: Decoded mapping key
        key_hex: Hex of the exact bytes hashed for a mapping key
        key_type: Declared key type of the mapping
    """

    kind: PathSegmentKind
    name: Optional[str] = None
    index: Optional[int] = None
    key: Any = None
    key_hex: Optional[str] = None
    key_type: Optional[str] = None

    def render(self) -> str:
        if self.kind == PathSegmentKind.STRUCT_FIELD:
            return f".{self.name}"
        if self.kind == PathSegmentKind.ARRAY_INDEX:
            return f"[{self.index}]"
        if self.kind == PathSegmentKind.MAPPING_KEY:
            key = self.key if self.key is not None else self.key_hex
            return f"[{key}]"
        if self.kind == PathSegmentKind.BYTES_CHUNK:
            return f"._chunk[{self.index}]"
        return "._length"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"kind": self.kind.value}
        if self.name is not None:
            result["name"] = self.name
        if self.index is not None:
            result["index"] = self.index
        if self.kind == PathSegmentKind.MAPPING_KEY:
            result["key"] = self.key
            result["keyHex"] = self.key_hex
            result["keyType"] = self.key_type
        return result


def render_path(name: str, path: Tuple[PathSegment, ...]) -> str:
    """Render a variable name and its path as a full expression, e.g. `a[0x..].b`."""
    return name + "".join(segment.render() for segment in path)


@dataclass(frozen=True)
class StorageLayoutDescriptor:
    """
    Slot arithmetic for one variable, struct member, mapping value or array element.

    `slot` is absolute for top-level variables and relative to the parent for
    struct members. Mapping values and array elements are stored with slot 0
    and offset 0; their position comes from the parent's arithmetic.
    """

    label: str
    type_id: str
    type_label: str
    kind: TypeKind
    slot: int = 0
    offset: int = 0
    size: int = WORD_SIZE
    key_type: Optional[str] = None
    value: Optional["StorageLayoutDescriptor"] = None
    length: Optional[int] = None
    members: Tuple["StorageLayoutDescriptor", ...] = ()

    @property
    def slot_count(self) -> int:
        """Number of consecutive slots occupied at the descriptor's own base."""
        if self.kind in (TypeKind.STRUCT, TypeKind.STATIC_ARRAY):
            return max(1, -(-self.size // WORD_SIZE))
        return 1

    @property
    def is_packed_element(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and self.size < WORD_SIZE

    @cached_property
    def has_containers(self) -> bool:
        """Whether mappings, dynamic arrays or bytes live inside this descriptor."""
        if self.kind in (TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY, TypeKind.BYTES):
            return True
        if self.kind == TypeKind.STRUCT:
            return any(member.has_containers for member in self.members)
        if self.kind == TypeKind.STATIC_ARRAY and self.value is not None:
            return self.value.has_containers
        return False

    def concrete_slots(self, base: int) -> Optional[range]:
        """
        Slots this descriptor can ever occupy when placed at `base`.

        Returns None for mappings and dynamic arrays, whose slots can only be
        found by derivation.
        """
        if self.kind in (TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY):
            return None
        return range(base, base + self.slot_count)

    def element_position(self, index: int) -> Tuple[int, int]:
        """
        Position of array element `index` relative to the array data start.

        Returns:
            Tuple of (relative slot, byte offset)
        """
        element = self.value
        if element is None:
            raise LayoutError(f"{self.type_label} has no element type")
        if element.is_packed_element:
            per_slot = WORD_SIZE // element.size
            return index // per_slot, (index % per_slot) * element.size
        return index * element.slot_count, 0

    def data_slot_count(self, length: int) -> int:
        """Number of slots used by `length` elements of this array."""
        if length <= 0:
            return 0
        element = self.value
        if element is not None and element.is_packed_element:
            per_slot = WORD_SIZE // element.size
            return -(-length // per_slot)
        return length * (element.slot_count if element is not None else 1)

    def locate_element(self, rel_slot: int, length: Optional[int]) -> List["Located"]:
        """
        Leaf fields living at `rel_slot` of the array data area.

        Args:
            rel_slot: Slot relative to the first data slot
            length: Number of elements, or None when unknown
        """
        element = self.value
        if element is None or rel_slot < 0:
            return []
        if length is not None and rel_slot >= self.data_slot_count(length):
            return []

        results: List[Located] = []
        if element.is_packed_element:
            per_slot = WORD_SIZE // element.size
            first = rel_slot * per_slot
            for index in range(first, first + per_slot):
                if length is not None and index >= length:
                    break
                segment = PathSegment(PathSegmentKind.ARRAY_INDEX, index=index)
                results.append(Located(element, (index - first) * element.size, (segment,)))
            return results

        index, inner = divmod(rel_slot, element.slot_count)
        segment = PathSegment(PathSegmentKind.ARRAY_INDEX, index=index)
        for located in element.locate(inner):
            results.append(located.prefixed(segment))
        return results

    def locate(self, rel_slot: int) -> List["Located"]:
        """
        Leaf fields stored at `rel_slot`, relative to this descriptor's base.

        Mappings occupy no data at their own slot and locate nothing. The
        base slot of a dynamic array resolves to its `_length`.
        """
        if rel_slot < 0:
            return []
        if self.kind in (TypeKind.PRIMITIVE, TypeKind.BYTES):
            return [Located(self, self.offset, ())] if rel_slot == 0 else []
        if self.kind == TypeKind.DYNAMIC_ARRAY:
            if rel_slot != 0:
                return []
            segment = PathSegment(PathSegmentKind.ARRAY_LENGTH)
            return [Located(LENGTH_DESCRIPTOR, 0, (segment,))]
        if self.kind == TypeKind.STRUCT:
            results: List[Located] = []
            for member in self.members:
                member_rel = rel_slot - member.slot
                if 0 <= member_rel < member.slot_count:
                    segment = PathSegment(PathSegmentKind.STRUCT_FIELD, name=member.label)
                    results.extend(located.prefixed(segment) for located in member.locate(member_rel))
            return sorted(results, key=lambda located: located.offset)
        if self.kind == TypeKind.STATIC_ARRAY:
            if rel_slot >= self.slot_count:
                return []
            return self.locate_element(rel_slot, self.length)
        return []

    def containers(self) -> Iterator[Tuple["StorageLayoutDescriptor", int, Tuple[PathSegment, ...]]]:
        """
        Yield the mappings, dynamic arrays and bytes reachable in the bounded part.

        Yields:
            Tuples of (container descriptor, slot relative to this base, path)
        """
        if self.kind in (TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY, TypeKind.BYTES):
            yield self, 0, ()
        elif self.kind == TypeKind.STRUCT:
            for member in self.members:
                if not member.has_containers:
                    continue
                segment = PathSegment(PathSegmentKind.STRUCT_FIELD, name=member.label)
                for container, rel, path in member.containers():
                    yield container, member.slot + rel, (segment,) + path
        elif self.kind == TypeKind.STATIC_ARRAY and self.value is not None and self.value.has_containers:
            for index in range(self.length or 0):
                rel_base, _ = self.element_position(index)
                segment = PathSegment(PathSegmentKind.ARRAY_INDEX, index=index)
                for container, rel, path in self.value.containers():
                    yield container, rel_base + rel, (segment,) + path

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "label": self.label,
            "type": self.type_label,
            "kind": self.kind.value,
            "slot": self.slot,
            "offset": self.offset,
            "size": self.size,
        }
        if self.key_type is not None:
            result["keyType"] = self.key_type
        if self.value is not None:
            result["value"] = self.value.to_dict()
        if self.length is not None:
            result["length"] = self.length
        if self.members:
            result["members"] = [member.to_dict() for member in self.members]
        return result


@dataclass(frozen=True)
class Located:
    """A leaf field found at a slot, with its byte offset and path."""

    leaf: StorageLayoutDescriptor
    offset: int
    path: Tuple[PathSegment, ...] = ()

    @property
    def size(self) -> int:
        if self.leaf.kind == TypeKind.PRIMITIVE:
            return min(self.leaf.size, WORD_SIZE)
        return WORD_SIZE

    def prefixed(self, segment: PathSegment) -> "Located":
        return Located(self.leaf, self.offset, (segment,) + self.path)


LENGTH_DESCRIPTOR = StorageLayoutDescriptor(
    label="_length",
    type_id="t_uint256",
    type_label="uint256",
    kind=TypeKind.PRIMITIVE,
)


@dataclass(frozen=True)
class ContainerRoot:
    """
    An unbounded container reachable from a top-level variable without derivation.

    Attributes:
        variable: The top-level variable owning the container
        container: Descriptor of the mapping, dynamic array or bytes value
        slot: Absolute base slot of the container
        path: Path from the variable to the container
    """

    variable: StorageLayoutDescriptor
    container: StorageLayoutDescriptor
    slot: int
    path: Tuple[PathSegment, ...] = ()


class _DescriptorBuilder:
    """Builds descriptors from a solc `types` dictionary."""

    def __init__(self, types: Mapping[str, Any]) -> None:
        self.types = types
        self._in_progress: Set[str] = set()

    def type_info(self, type_id: str) -> Mapping[str, Any]:
        info = self.types.get(type_id)
        if not isinstance(info, Mapping):
            raise LayoutError(f"Unknown storage type: {type_id}")
        return info

    def build(self, type_id: str, label: str = "", slot: int = 0, offset: int = 0) -> StorageLayoutDescriptor:
        info = self.type_info(type_id)
        if "encoding" not in info:
            raise LayoutError(f"Storage type {type_id} has no encoding")
        try:
            type_label = info["label"]
            size = int(info["numberOfBytes"])
        except (KeyError, TypeError, ValueError) as e:
            raise LayoutError(f"Malformed storage type {type_id}: {e}") from e

        common = dict(label=label, type_id=type_id, type_label=type_label, slot=slot, offset=offset, size=size)

        # Recursive types (a struct holding a mapping of itself) are unrolled once
        if type_id in self._in_progress:
            logger.debug("Truncating recursive storage type", type_id=type_id)
            return StorageLayoutDescriptor(kind=self._kind(info), **common)

        self._in_progress.add(type_id)
        try:
            return self._build_children(info, common)
        finally:
            self._in_progress.discard(type_id)

    def _kind(self, info: Mapping[str, Any]) -> TypeKind:
        encoding = info.get("encoding")
        if encoding == "mapping":
            return TypeKind.MAPPING
        if encoding == "dynamic_array":
            return TypeKind.DYNAMIC_ARRAY
        if encoding == "bytes":
            return TypeKind.BYTES
        if encoding != "inplace":
            raise LayoutError(f"Unsupported storage encoding: {encoding}")
        if "members" in info:
            return TypeKind.STRUCT
        if "base" in info:
            return TypeKind.STATIC_ARRAY
        return TypeKind.PRIMITIVE

    def _build_children(self, info: Mapping[str, Any], common: Dict[str, Any]) -> StorageLayoutDescriptor:
        kind = self._kind(info)

        if kind == TypeKind.MAPPING:
            try:
                key_id, value_id = info["key"], info["value"]
            except KeyError as e:
                raise LayoutError(f"Mapping type {common['type_id']} is missing {e}") from e
            key_type = self.type_info(key_id).get("label")
            return StorageLayoutDescriptor(
                kind=kind, key_type=key_type, value=self.build(value_id), **common
            )

        if kind == TypeKind.DYNAMIC_ARRAY:
            if "base" not in info:
                raise LayoutError(f"Array type {common['type_id']} is missing its base type")
            return StorageLayoutDescriptor(kind=kind, value=self.build(info["base"]), **common)

        if kind == TypeKind.STATIC_ARRAY:
            match = _STATIC_LENGTH_RE.search(common["type_label"])
            if not match:
                raise LayoutError(f"Cannot read static array length from {common['type_label']!r}")
            return StorageLayoutDescriptor(
                kind=kind, value=self.build(info["base"]), length=int(match.group(1)), **common
            )

        if kind == TypeKind.STRUCT:
            members = tuple(self.build_item(member) for member in info["members"] or ())
            return StorageLayoutDescriptor(kind=kind, members=members, **common)

        return StorageLayoutDescriptor(kind=kind, **common)

    def build_item(self, item: Mapping[str, Any]) -> StorageLayoutDescriptor:
        """Build a descriptor from a `storage` entry or struct member entry."""
        try:
            type_id = item["type"]
            label = item["label"]
            slot = int(item["slot"])
            offset = int(item.get("offset", 0))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise LayoutError(f"Malformed storage entry {item!r}: {e}") from e
        return self.build(type_id, label=label, slot=slot, offset=offset)


class StorageLayout:
    """
    Index over the top-level variables of one contract's storage.

    Attributes:
        variables: Top-level variable descriptors, in declaration order
        exact: Slot to variables occupying it at a fixed position
        static_arrays: Top-level static arrays
        mapping_roots: Mappings reachable without derivation
        dynamic_array_roots: Dynamic arrays reachable without derivation
        bytes_roots: bytes/string values reachable without derivation
    """

    def __init__(self, variables: Tuple[StorageLayoutDescriptor, ...]) -> None:
        self.variables = variables
        self.exact: Dict[int, List[StorageLayoutDescriptor]] = {}
        self.static_arrays: List[StorageLayoutDescriptor] = []
        self.mapping_roots: List[ContainerRoot] = []
        self.dynamic_array_roots: List[ContainerRoot] = []
        self.bytes_roots: List[ContainerRoot] = []

        for variable in variables:
            self._index(variable)

    def _index(self, variable: StorageLayoutDescriptor) -> None:
        if variable.kind == TypeKind.STATIC_ARRAY:
            self.static_arrays.append(variable)
        elif variable.kind != TypeKind.MAPPING:
            # a dynamic array only occupies its length slot
            for slot in variable.concrete_slots(variable.slot) or (variable.slot,):
                self.exact.setdefault(slot, []).append(variable)

        for container, rel, path in variable.containers():
            root = ContainerRoot(variable, container, variable.slot + rel, path)
            if container.kind == TypeKind.MAPPING:
                self.mapping_roots.append(root)
            elif container.kind == TypeKind.DYNAMIC_ARRAY:
                self.dynamic_array_roots.append(root)
            else:
                self.bytes_roots.append(root)

    @classmethod
    def from_solc(cls, layout: Mapping[str, Any]) -> "StorageLayout":
        """
        Build a layout from solc `storageLayout` output.

        Args:
            layout: Dictionary with `storage` (list of items) and `types`

        Raises:
            LayoutError: If the metadata is malformed
        """
        if not isinstance(layout, Mapping):
            raise LayoutError("Storage layout must be a JSON object")
        storage = layout.get("storage")
        if not isinstance(storage, list):
            raise LayoutError("Storage layout is missing the `storage` list")
        types = layout.get("types") or {}
        if not isinstance(types, Mapping):
            raise LayoutError("Storage layout `types` must be an object")

        builder = _DescriptorBuilder(types)
        variables = tuple(builder.build_item(item) for item in storage)
        logger.debug("Built storage layout", variables=len(variables))
        return cls(variables)

    def variables_at(self, slot: int) -> List[StorageLayoutDescriptor]:
        return self.exact.get(slot, [])

    def get_variable(self, label: str) -> Optional[StorageLayoutDescriptor]:
        for variable in self.variables:
            if variable.label == label:
                return variable
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"variables": [variable.to_dict() for variable in self.variables]}

    def __str__(self) -> str:
        lines = ["Storage Layout:", "----------------"]
        for variable in self.variables:
            lines.append(
                f"Slot {variable.slot}: {variable.label} ({variable.type_label}, "
                f"offset={variable.offset}, size={variable.size})"
            )
        return "\n".join(lines)
