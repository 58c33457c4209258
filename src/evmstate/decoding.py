"""
Decoding of storage words into Python values.

Packed fields are extracted by byte range before decoding so a field never
sees the bytes of its neighbours. Decoding itself is delegated to eth-abi by
re-padding the extracted field into a canonical ABI word.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from .hexutils import WORD_SIZE

logger = structlog.get_logger()

_UINT_RE = re.compile(r"^uint(\d*)$")
_INT_RE = re.compile(r"^int(\d*)$")
_FIXED_BYTES_RE = re.compile(r"^bytes(\d+)$")


@dataclass(frozen=True)
class BytesSlotValue:
    """Interpretation of the base slot of a bytes or string variable."""

    length: int
    is_long: bool
    decoded: Optional[str]


def extract_field(word: bytes, offset: int, size: int) -> bytes:
    """
    Extract `size` bytes located `offset` bytes from the right of a word.

    Solidity packs variables from the lowest-order byte upwards, so offset 0
    is the rightmost byte of the slot.
    """
    if offset < 0 or size <= 0 or offset + size > WORD_SIZE:
        raise ValueError(f"Invalid field range offset={offset} size={size}")
    end = WORD_SIZE - offset
    return word[end - size:end]


def abi_type_for(type_label: str, size: Optional[int] = None) -> Optional[str]:
    """
    Map a storage type label onto the ABI type used to decode it.

    Returns None for types that have no single-word ABI representation.
    """
    label = type_label.strip()
    if label in ("address", "address payable") or label.startswith("contract "):
        return "address"
    if label == "bool":
        return "bool"
    if label.startswith("enum "):
        return f"uint{8 * (size or 1)}"
    match = _UINT_RE.match(label)
    if match:
        return f"uint{match.group(1) or 256}"
    match = _INT_RE.match(label)
    if match:
        return f"int{match.group(1) or 256}"
    if _FIXED_BYTES_RE.match(label):
        return label
    return None


def _normalize_decoded(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return value


def decode_primitive(type_label: str, field: bytes) -> Any:
    """
    Decode an extracted storage field of a value type.

    Args:
        type_label: Solidity type label (e.g. "uint8", "address", "enum Status")
        field: The field bytes, exactly as wide as the type

    Returns:
        The decoded value (int, bool, checksum address or 0x-prefixed hex for
        fixed bytes), or None if the bytes are not a valid encoding
    """
    abi_type = abi_type_for(type_label, len(field))
    if abi_type is None:
        return None

    if abi_type.startswith("bytes"):
        padded = field.ljust(WORD_SIZE, b"\x00")
    elif abi_type.startswith("int") and field and field[0] & 0x80:
        # sign-extend negative values
        padded = field.rjust(WORD_SIZE, b"\xff")
    else:
        padded = field.rjust(WORD_SIZE, b"\x00")

    try:
        value = abi_decode([abi_type], padded)[0]
    except DecodingError as e:
        logger.debug("Could not decode storage field", type=type_label, field=field.hex(), error=str(e))
        return None

    return _normalize_decoded(abi_type, value)


def decode_key(key_type: Optional[str], raw: bytes) -> Any:
    """
    Decode a mapping key from the exact bytes that were hashed.

    Value-type keys are ABI-encoded words; string and bytes keys are hashed
    unpadded. Keys that do not decode under the declared type are returned as
    hex so the path stays auditable.
    """
    if key_type == "string":
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return "0x" + raw.hex()
    if key_type is None or key_type == "bytes" or len(raw) != WORD_SIZE:
        return "0x" + raw.hex()

    abi_type = abi_type_for(key_type)
    if abi_type is None:
        return "0x" + raw.hex()
    try:
        value = abi_decode([abi_type], raw)[0]
    except DecodingError:
        return "0x" + raw.hex()
    return _normalize_decoded(abi_type, value)


def decode_bytes_slot(type_label: str, word: bytes) -> BytesSlotValue:
    """
    Interpret the base slot of a `bytes` or `string` variable.

    Short values (< 32 bytes) live inline, left-aligned, with length * 2 in
    the lowest byte. Long values store length * 2 + 1 and keep their content
    at keccak256(slot); that content is not decoded here.
    """
    value = int.from_bytes(word, "big")
    if value & 1:
        return BytesSlotValue(length=(value - 1) // 2, is_long=True, decoded=None)

    length = word[-1] // 2
    if length >= WORD_SIZE:
        return BytesSlotValue(length=length, is_long=False, decoded=None)

    data = word[:length]
    if type_label == "string":
        try:
            return BytesSlotValue(length=length, is_long=False, decoded=data.decode("utf-8"))
        except UnicodeDecodeError:
            pass
    return BytesSlotValue(length=length, is_long=False, decoded="0x" + data.hex())
