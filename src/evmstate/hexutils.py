"""
Word and slot arithmetic helpers.

Slots are handled as Python ints internally and rendered as 0x-prefixed,
zero-padded 32-byte hex strings at the edges.
"""

from typing import Union

from eth_utils import is_hex, keccak, remove_0x_prefix, to_bytes

WORD_SIZE = 32
SLOT_SPACE = 1 << 256

HexLike = Union[int, str, bytes]


def to_int(value: HexLike) -> int:
    """Convert an int, hex string or big-endian bytes into an int."""
    if isinstance(value, bool):
        raise TypeError("bool is not a valid word value")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        digits = remove_0x_prefix(value.strip())
        if digits == "":
            return 0
        if not is_hex(digits):
            raise ValueError(f"Not a hex value: {value!r}")
        return int(digits, 16)
    raise TypeError(f"Unsupported word value type: {type(value).__name__}")


def to_word(value: HexLike) -> bytes:
    """
    Convert a value into a 32-byte big-endian word.

    Hex strings and bytes shorter than a word are left-padded with zeros.

    Raises:
        ValueError: If the value does not fit in 32 bytes
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        digits = remove_0x_prefix(value.strip())
        if len(digits) % 2:
            digits = "0" + digits
        raw = to_bytes(hexstr=digits) if digits else b""
    else:
        number = to_int(value)
        if number < 0 or number >= SLOT_SPACE:
            raise ValueError(f"Value out of word range: {number}")
        return number.to_bytes(WORD_SIZE, "big")

    if len(raw) > WORD_SIZE:
        raise ValueError(f"Value longer than {WORD_SIZE} bytes: 0x{raw.hex()}")
    return raw.rjust(WORD_SIZE, b"\x00")


def word_hex(word: bytes) -> str:
    return "0x" + word.hex()


def slot_hex(slot: int) -> str:
    """Render a slot as a 0x-prefixed 64 hex digit string."""
    return f"0x{slot % SLOT_SPACE:064x}"


def normalize_slot(slot: HexLike) -> int:
    return to_int(slot) % SLOT_SPACE


def normalize_address(address: str) -> str:
    """Lowercase, 0x-prefixed address used as a dictionary key."""
    return "0x" + remove_0x_prefix(address.strip()).lower().rjust(40, "0")


def keccak_int(data: bytes) -> int:
    return int.from_bytes(keccak(primitive=data), "big")


def mapping_slot(key: bytes, base_slot: int) -> int:
    """
    Slot of a mapping value: keccak256(key . base_slot).

    `key` is already encoded: a 32-byte word for value types, the raw bytes
    for string and bytes keys.
    """
    return keccak_int(key + base_slot.to_bytes(WORD_SIZE, "big"))


def array_data_slot(base_slot: int) -> int:
    """First data slot of a dynamic array or long bytes value: keccak256(base_slot)."""
    return keccak_int(base_slot.to_bytes(WORD_SIZE, "big"))
