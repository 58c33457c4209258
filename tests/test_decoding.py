import pytest
from eth_utils import keccak, to_checksum_address

from evmstate.decoding import (
    abi_type_for,
    decode_bytes_slot,
    decode_key,
    decode_primitive,
    extract_field,
)
from evmstate.hexutils import (
    array_data_slot,
    mapping_slot,
    normalize_address,
    slot_hex,
    to_int,
    to_word,
)

ADDR = "0x1111111111111111111111111111111111111111"


def test_to_word_left_pads():
    assert to_word("0x01") == b"\x00" * 31 + b"\x01"
    assert to_word("0x1") == b"\x00" * 31 + b"\x01"
    assert to_word(255) == b"\x00" * 31 + b"\xff"
    assert to_word(b"\xab") == b"\x00" * 31 + b"\xab"


def test_to_word_rejects_oversized_values():
    with pytest.raises(ValueError):
        to_word("0x" + "ff" * 33)
    with pytest.raises(ValueError):
        to_word(-1)


def test_to_int():
    assert to_int("0x") == 0
    assert to_int("0x10") == 16
    assert to_int(b"\x01\x00") == 256
    with pytest.raises(TypeError):
        to_int(True)
    with pytest.raises(ValueError):
        to_int("0xzz")


def test_slot_hex_and_address_normalization():
    assert slot_hex(1) == "0x" + "0" * 63 + "1"
    assert normalize_address(to_checksum_address(ADDR)) == ADDR
    assert normalize_address("0xABC") == "0x" + "0" * 37 + "abc"


def test_mapping_and_array_slots_use_keccak():
    key = bytes(12) + bytes.fromhex(ADDR[2:])
    expected = int.from_bytes(keccak(key + (3).to_bytes(32, "big")), "big")
    assert mapping_slot(key, 3) == expected
    assert array_data_slot(4) == int.from_bytes(keccak((4).to_bytes(32, "big")), "big")


def test_extract_field_reads_from_the_right():
    word = bytes(range(32))
    assert extract_field(word, 0, 1) == bytes([31])
    assert extract_field(word, 1, 1) == bytes([30])
    assert extract_field(word, 2, 20) == bytes(range(10, 30))
    assert extract_field(word, 0, 32) == word


def test_extract_field_rejects_ranges_outside_the_word():
    with pytest.raises(ValueError):
        extract_field(bytes(32), 16, 17)


@pytest.mark.parametrize(
    "label,size,expected",
    [
        ("uint", None, "uint256"),
        ("uint64", None, "uint64"),
        ("int", None, "int256"),
        ("int8", None, "int8"),
        ("address payable", None, "address"),
        ("contract IERC20", None, "address"),
        ("enum Sample.Status", 1, "uint8"),
        ("bytes4", None, "bytes4"),
        ("bool", None, "bool"),
        ("string", None, None),
        ("struct Sample.Info", None, None),
    ],
)
def test_abi_type_for(label, size, expected):
    assert abi_type_for(label, size) == expected


def test_decode_primitives():
    assert decode_primitive("uint8", b"\x2a") == 42
    assert decode_primitive("bool", b"\x01") is True
    assert decode_primitive("bool", b"\x00") is False
    assert decode_primitive("int8", b"\xff") == -1
    assert decode_primitive("int16", b"\x00\x7f") == 127
    assert decode_primitive("bytes4", b"\xde\xad\xbe\xef") == "0xdeadbeef"
    assert decode_primitive("enum Sample.Status", b"\x02") == 2
    assert decode_primitive("address", bytes.fromhex(ADDR[2:])) == to_checksum_address(ADDR)
    assert decode_primitive("contract IERC20", bytes.fromhex(ADDR[2:])) == to_checksum_address(ADDR)


def test_decode_primitive_invalid_encoding_returns_none():
    assert decode_primitive("bool", b"\x02") is None
    assert decode_primitive("string", b"\x00" * 32) is None


def test_decode_key():
    word = bytes(12) + bytes.fromhex(ADDR[2:])
    assert decode_key("address", word) == to_checksum_address(ADDR)
    assert decode_key("uint256", (7).to_bytes(32, "big")) == 7
    assert decode_key("string", b"alice") == "alice"
    assert decode_key("bytes", b"\x01\x02") == "0x0102"
    assert decode_key(None, (7).to_bytes(32, "big")) == "0x" + "00" * 31 + "07"


def test_decode_short_string_slot():
    word = b"hello".ljust(31, b"\x00") + bytes([10])
    value = decode_bytes_slot("string", word)
    assert value.length == 5
    assert not value.is_long
    assert value.decoded == "hello"


def test_decode_short_bytes_slot_as_hex():
    word = b"\xca\xfe".ljust(31, b"\x00") + bytes([4])
    assert decode_bytes_slot("bytes", word).decoded == "0xcafe"


def test_decode_long_string_slot():
    word = (100 * 2 + 1).to_bytes(32, "big")
    value = decode_bytes_slot("string", word)
    assert value.is_long
    assert value.length == 100
    assert value.decoded is None
