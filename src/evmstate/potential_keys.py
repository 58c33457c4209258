"""
Candidate mapping keys and array indices for one call.

Candidates come from three places: the addresses touched by the call, the
call's ABI arguments and the values found on the stack at hashing and
storage-access operations. They are ranked so the keys most likely to be
mapping keys are tried first.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError, ParseError
from eth_abi.grammar import TupleType, parse as parse_abi_type
from eth_utils import function_abi_to_4byte_selector, to_bytes, to_checksum_address
from eth_utils.abi import collapse_if_tuple

from .hexutils import WORD_SIZE, to_word

logger = structlog.get_logger()

# Opcodes whose stack operands may carry mapping keys or slot bases
KEY_BEARING_OPS = frozenset({"SHA3", "KECCAK256", "SLOAD", "SSTORE"})

_UNPADDED_TYPES = ("string", "bytes")


class CandidateSource(str, Enum):
    ADDRESS = "address"
    ARGUMENT = "argument"
    STACK = "stack"


@dataclass(frozen=True)
class MappingKeyCandidate:
    """
    A value that might have been hashed as a mapping key.

    Attributes:
        raw: The exact bytes to hash: a 32-byte word, or the unpadded bytes
            of a string/bytes argument
        decoded: Decoded value, when known
        type: Declared ABI type, when known
        source: Where the candidate was found
    """

    raw: bytes
    decoded: Any = None
    type: Optional[str] = None
    source: CandidateSource = CandidateSource.STACK

    @property
    def hex(self) -> str:
        return "0x" + self.raw.hex()

    @property
    def rank(self) -> int:
        """0 for addresses, 1 for other typed values, 2 for untyped values."""
        if self.type == "address":
            return 0
        if self.type is not None:
            return 1
        return 2

    @property
    def is_word(self) -> bool:
        return len(self.raw) == WORD_SIZE

    @property
    def as_index(self) -> Optional[int]:
        """The candidate as an array index, if it is a 32-byte word."""
        if not self.is_word:
            return None
        return int.from_bytes(self.raw, "big")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hex": self.hex,
            "decoded": self.decoded,
            "type": self.type,
            "source": self.source.value,
        }


def address_candidates(addresses: Iterable[str]) -> Iterator[MappingKeyCandidate]:
    for address in addresses:
        yield MappingKeyCandidate(
            raw=to_word(address),
            decoded=to_checksum_address(address),
            type="address",
            source=CandidateSource.ADDRESS,
        )


def flatten_argument(type_str: str, value: Any) -> Iterator[Tuple[str, Any]]:
    """
    Flatten an ABI argument into (type, value) leaves.

    Arrays yield one leaf per element and tuples one leaf per component,
    recursively.
    """
    abi_type = parse_abi_type(type_str)
    if abi_type.is_array:
        item_type = abi_type.item_type.to_type_str()
        for item in value:
            yield from flatten_argument(item_type, item)
    elif isinstance(abi_type, TupleType):
        for component, item in zip(abi_type.components, value):
            yield from flatten_argument(component.to_type_str(), item)
    else:
        yield type_str, value


def argument_candidate(type_str: str, value: Any) -> MappingKeyCandidate:
    """
    Encode one scalar argument the way Solidity hashes it as a mapping key.

    Raises:
        EncodingError: If the value cannot be encoded as `type_str`
    """
    if type_str == "string":
        raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        return MappingKeyCandidate(raw=raw, decoded=value, type=type_str, source=CandidateSource.ARGUMENT)
    if type_str == "bytes":
        raw = to_bytes(hexstr=value) if isinstance(value, str) else bytes(value)
        return MappingKeyCandidate(raw=raw, decoded="0x" + raw.hex(), type=type_str, source=CandidateSource.ARGUMENT)

    if isinstance(value, str) and type_str.startswith("bytes"):
        value = to_bytes(hexstr=value)
    raw = abi_encode([type_str], [value])
    if type_str == "address":
        decoded = to_checksum_address(value)
    elif isinstance(value, bytes):
        decoded = "0x" + value.hex()
    else:
        decoded = value
    return MappingKeyCandidate(raw=raw, decoded=decoded, type=type_str, source=CandidateSource.ARGUMENT)


def argument_candidates(arguments: Iterable[Tuple[str, Any]]) -> Iterator[MappingKeyCandidate]:
    for type_str, value in arguments:
        try:
            leaves = list(flatten_argument(type_str, value))
        except (ParseError, TypeError) as e:
            logger.warning("Skipping argument with unsupported type", type=type_str, error=str(e))
            continue
        for leaf_type, leaf_value in leaves:
            try:
                yield argument_candidate(leaf_type, leaf_value)
            except (EncodingError, TypeError, ValueError) as e:
                logger.warning("Skipping argument that cannot be encoded", type=leaf_type, error=str(e))


def decode_calldata(calldata: str, abi_functions: Sequence[Mapping[str, Any]]) -> List[Tuple[str, Any]]:
    """
    Decode calldata against the matching ABI function fragment.

    Returns:
        List of (type, value) pairs, empty if no fragment matches or the
        calldata does not decode
    """
    data = to_bytes(hexstr=calldata) if calldata else b""
    if len(data) < 4:
        return []

    selector = data[:4]
    for fn in abi_functions:
        if fn.get("type", "function") != "function":
            continue
        if function_abi_to_4byte_selector(fn) != selector:
            continue

        types = [collapse_if_tuple(dict(item)) for item in fn.get("inputs", [])]
        try:
            values = abi_decode(types, data[4:])
        except (DecodingError, ParseError) as e:
            logger.warning("Could not decode calldata", function=fn.get("name"), error=str(e))
            return []
        logger.debug("Decoded calldata", function=fn.get("name"), arguments=len(values))
        return list(zip(types, values))

    logger.debug("No ABI function matches calldata selector", selector="0x" + selector.hex())
    return []


def stack_candidates(struct_logs: Iterable[Mapping[str, Any]]) -> Iterator[MappingKeyCandidate]:
    """Untyped candidates from stack values at hashing and storage-access operations."""
    for entry in struct_logs:
        if entry.get("op") not in KEY_BEARING_OPS:
            continue
        for item in entry.get("stack") or []:
            try:
                raw = to_word(item)
            except (TypeError, ValueError):
                continue
            yield MappingKeyCandidate(raw=raw, source=CandidateSource.STACK)


def rank_candidates(candidates: Iterable[MappingKeyCandidate]) -> List[MappingKeyCandidate]:
    """
    Deduplicate candidates by raw value and order them by rank.

    A duplicate replaces the kept entry only when it is more specific
    (address beats other typed values, typed beats untyped). Ties keep the
    first-seen entry and order is stable within a rank.
    """
    unique: Dict[bytes, MappingKeyCandidate] = {}
    for candidate in candidates:
        kept = unique.get(candidate.raw)
        if kept is None or candidate.rank < kept.rank:
            unique[candidate.raw] = candidate
    return sorted(unique.values(), key=lambda candidate: candidate.rank)


def extract_potential_keys(
    addresses: Iterable[str],
    struct_logs: Optional[Iterable[Mapping[str, Any]]] = None,
    calldata: Optional[str] = None,
    abi_functions: Optional[Sequence[Mapping[str, Any]]] = None,
    decoded_args: Optional[Iterable[Mapping[str, Any]]] = None,
) -> List[MappingKeyCandidate]:
    """
    Gather and rank candidate mapping keys for one call.

    Args:
        addresses: Addresses touched or created by the call
        struct_logs: Raw opcode trace entries with `op` and `stack`
        calldata: Call input, decoded with `abi_functions`
        abi_functions: ABI function fragments of the called contract
        decoded_args: Pre-decoded arguments as {"type", "value"} entries,
            used instead of decoding calldata

    Returns:
        Deduplicated candidates: addresses first, then typed, then untyped
    """
    candidates: List[MappingKeyCandidate] = list(address_candidates(addresses))

    if decoded_args is not None:
        arguments = [(arg["type"], arg["value"]) for arg in decoded_args]
    elif calldata and abi_functions:
        arguments = decode_calldata(calldata, abi_functions)
    else:
        arguments = []
    candidates.extend(argument_candidates(arguments))

    if struct_logs:
        candidates.extend(stack_candidates(struct_logs))

    ranked = rank_candidates(candidates)
    logger.debug(
        "Extracted potential keys",
        total=len(ranked),
        addresses=sum(1 for c in ranked if c.source == CandidateSource.ADDRESS),
        arguments=sum(1 for c in ranked if c.source == CandidateSource.ARGUMENT),
        stack_values=sum(1 for c in ranked if c.source == CandidateSource.STACK),
    )
    return ranked
