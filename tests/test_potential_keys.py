import structlog
from eth_abi import encode
from eth_utils import function_abi_to_4byte_selector, to_checksum_address

from evmstate import potential_keys
from evmstate.potential_keys import (
    CandidateSource,
    MappingKeyCandidate,
    extract_potential_keys,
    flatten_argument,
    rank_candidates,
)

ADDR_A = "0x1111111111111111111111111111111111111111"
ADDR_B = "0x2222222222222222222222222222222222222222"
ADDR_C = "0x3333333333333333333333333333333333333333"

TRANSFER_ABI = {
    "type": "function",
    "name": "transfer",
    "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
    "outputs": [{"name": "", "type": "bool"}],
    "stateMutability": "nonpayable",
}

BATCH_ABI = {
    "type": "function",
    "name": "batch",
    "inputs": [
        {"name": "ids", "type": "uint256[]"},
        {
            "name": "order",
            "type": "tuple",
            "components": [
                {"name": "maker", "type": "address"},
                {"name": "nonce", "type": "uint64"},
            ],
        },
        {"name": "label", "type": "string"},
    ],
    "outputs": [],
    "stateMutability": "nonpayable",
}


def word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def calldata_for(fragment, types, values) -> str:
    return "0x" + (function_abi_to_4byte_selector(fragment) + encode(types, values)).hex()


def test_touched_addresses_become_address_candidates():
    keys = extract_potential_keys([ADDR_A, ADDR_B])
    assert [k.raw for k in keys] == [bytes(12) + bytes.fromhex(ADDR_A[2:]), bytes(12) + bytes.fromhex(ADDR_B[2:])]
    assert all(k.type == "address" and k.source == CandidateSource.ADDRESS for k in keys)
    assert keys[0].decoded == to_checksum_address(ADDR_A)


def test_calldata_arguments_are_decoded_and_encoded():
    calldata = calldata_for(TRANSFER_ABI, ["address", "uint256"], [ADDR_C, 42])
    keys = extract_potential_keys([ADDR_A], calldata=calldata, abi_functions=[TRANSFER_ABI])

    assert [(k.type, k.decoded) for k in keys] == [
        ("address", to_checksum_address(ADDR_A)),
        ("address", to_checksum_address(ADDR_C)),
        ("uint256", 42),
    ]
    assert keys[2].raw == word(42)
    assert keys[1].source == CandidateSource.ARGUMENT


def test_arrays_tuples_and_strings_are_flattened():
    calldata = calldata_for(
        BATCH_ABI,
        ["uint256[]", "(address,uint64)", "string"],
        [[5, 6], (ADDR_B, 9), "alice"],
    )
    keys = extract_potential_keys([], calldata=calldata, abi_functions=[BATCH_ABI])
    by_type = [(k.type, k.decoded) for k in keys]

    assert by_type[0] == ("address", to_checksum_address(ADDR_B))
    assert ("uint256", 5) in by_type
    assert ("uint256", 6) in by_type
    assert ("uint64", 9) in by_type
    string_key = next(k for k in keys if k.type == "string")
    # string keys are hashed unpadded
    assert string_key.raw == b"alice"
    assert not string_key.is_word


def test_flatten_argument():
    assert list(flatten_argument("uint8[2][]", [[1, 2], [3, 4]])) == [
        ("uint8", 1),
        ("uint8", 2),
        ("uint8", 3),
        ("uint8", 4),
    ]
    assert list(flatten_argument("(uint256,(bool,address))", (1, (True, ADDR_A)))) == [
        ("uint256", 1),
        ("bool", True),
        ("address", ADDR_A),
    ]


def test_unmatched_or_bad_calldata_is_skipped():
    selector_only = "0x" + function_abi_to_4byte_selector(TRANSFER_ABI).hex() + "00"
    keys = extract_potential_keys([ADDR_A], calldata=selector_only, abi_functions=[TRANSFER_ABI])
    assert [k.type for k in keys] == ["address"]

    keys = extract_potential_keys([ADDR_A], calldata="0xdeadbeef", abi_functions=[TRANSFER_ABI])
    assert [k.type for k in keys] == ["address"]


def test_pre_decoded_arguments():
    keys = extract_potential_keys(
        [],
        decoded_args=[{"type": "uint256", "value": 7}, {"type": "bytes32", "value": "0x" + "ab" * 32}],
    )
    assert [(k.type, k.raw) for k in keys] == [("uint256", word(7)), ("bytes32", b"\xab" * 32)]


def test_pre_decoded_arguments_that_do_not_encode_are_skipped():
    keys = extract_potential_keys([], decoded_args=[{"type": "uint8", "value": 300}, {"type": "uint256", "value": 1}])
    assert [k.decoded for k in keys] == [1]


def test_stack_values_only_from_key_bearing_ops():
    struct_logs = [
        {"op": "PUSH1", "stack": ["0x05"]},
        {"op": "SHA3", "stack": ["0x40", "0x00"]},
        {"op": "SLOAD", "stack": ["0x" + "00" * 31 + "07"]},
        {"op": "ADD", "stack": ["0x99"]},
    ]
    keys = extract_potential_keys([], struct_logs=struct_logs)
    assert [int.from_bytes(k.raw, "big") for k in keys] == [0x40, 0, 7]
    assert all(k.type is None and k.source == CandidateSource.STACK for k in keys)


def test_dedup_keeps_most_specific_and_orders_by_rank():
    struct_logs = [
        {"op": "SLOAD", "stack": ["0x2a"]},
        {"op": "SSTORE", "stack": [ADDR_A]},
    ]
    keys = extract_potential_keys(
        [ADDR_A],
        struct_logs=struct_logs,
        decoded_args=[{"type": "uint256", "value": 42}],
    )
    assert [(k.type, k.source) for k in keys] == [
        ("address", CandidateSource.ADDRESS),
        ("uint256", CandidateSource.ARGUMENT),
    ]


def test_rank_candidates_is_stable_within_rank():
    untyped = [MappingKeyCandidate(raw=word(i)) for i in (3, 1, 2)]
    typed = MappingKeyCandidate(raw=word(9), decoded=9, type="uint256", source=CandidateSource.ARGUMENT)
    ranked = rank_candidates(untyped + [typed])
    assert [k.raw for k in ranked] == [word(9), word(3), word(1), word(2)]
    assert ranked[0].as_index == 9


def test_extraction_logs_under_default_structlog_config(monkeypatch, capsys):
    monkeypatch.setattr(potential_keys, "logger", structlog.get_logger())
    struct_logs = [{"op": "SLOAD", "stack": ["0x5"]}]

    keys = extract_potential_keys([ADDR_A], struct_logs=struct_logs)

    assert [key.source for key in keys] == [CandidateSource.ADDRESS, CandidateSource.STACK]
    assert "Extracted potential keys" in capsys.readouterr().out
