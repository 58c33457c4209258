"""Shared layout fixtures modelled on solc `storageLayout` output."""

import pytest
import structlog

from evmstate.layout import StorageLayout

ADDR_A = "0x1111111111111111111111111111111111111111"
ADDR_B = "0x2222222222222222222222222222222222222222"

# contract Sample {
#     uint8 small; bool flag; address owner;                       // slot 0
#     mapping(address => uint256) balances;                        // slot 1
#     mapping(address => mapping(address => uint256)) allowances;  // slot 2
#     uint256[] arr;                                               // slot 3
#     uint64[3] fixedArr;                                          // slot 4
#     Info info;                                                   // slots 5-6
#     string name;                                                 // slot 7
#     mapping(address => Info) infos;                              // slot 8
#     mapping(string => uint256) byName;                           // slot 9
# }
# struct Info { uint128 a; uint128 b; mapping(uint256 => address) owners; }
SAMPLE_TYPES = {
    "t_uint8": {"encoding": "inplace", "label": "uint8", "numberOfBytes": "1"},
    "t_bool": {"encoding": "inplace", "label": "bool", "numberOfBytes": "1"},
    "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
    "t_uint64": {"encoding": "inplace", "label": "uint64", "numberOfBytes": "8"},
    "t_uint128": {"encoding": "inplace", "label": "uint128", "numberOfBytes": "16"},
    "t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"},
    "t_string_storage": {"encoding": "bytes", "label": "string", "numberOfBytes": "32"},
    "t_string_memory_ptr": {"encoding": "bytes", "label": "string", "numberOfBytes": "32"},
    "t_mapping(t_address,t_uint256)": {
        "encoding": "mapping",
        "key": "t_address",
        "label": "mapping(address => uint256)",
        "numberOfBytes": "32",
        "value": "t_uint256",
    },
    "t_mapping(t_address,t_mapping(t_address,t_uint256))": {
        "encoding": "mapping",
        "key": "t_address",
        "label": "mapping(address => mapping(address => uint256))",
        "numberOfBytes": "32",
        "value": "t_mapping(t_address,t_uint256)",
    },
    "t_mapping(t_uint256,t_address)": {
        "encoding": "mapping",
        "key": "t_uint256",
        "label": "mapping(uint256 => address)",
        "numberOfBytes": "32",
        "value": "t_address",
    },
    "t_mapping(t_address,t_struct(Info)12_storage)": {
        "encoding": "mapping",
        "key": "t_address",
        "label": "mapping(address => struct Sample.Info)",
        "numberOfBytes": "32",
        "value": "t_struct(Info)12_storage",
    },
    "t_mapping(t_string_memory_ptr,t_uint256)": {
        "encoding": "mapping",
        "key": "t_string_memory_ptr",
        "label": "mapping(string => uint256)",
        "numberOfBytes": "32",
        "value": "t_uint256",
    },
    "t_array(t_uint256)dyn_storage": {
        "encoding": "dynamic_array",
        "base": "t_uint256",
        "label": "uint256[]",
        "numberOfBytes": "32",
    },
    "t_array(t_uint64)3_storage": {
        "encoding": "inplace",
        "base": "t_uint64",
        "label": "uint64[3]",
        "numberOfBytes": "32",
    },
    "t_struct(Info)12_storage": {
        "encoding": "inplace",
        "label": "struct Sample.Info",
        "numberOfBytes": "64",
        "members": [
            {"astId": 7, "contract": "Sample.sol:Sample", "label": "a", "offset": 0, "slot": "0", "type": "t_uint128"},
            {"astId": 9, "contract": "Sample.sol:Sample", "label": "b", "offset": 16, "slot": "0", "type": "t_uint128"},
            {
                "astId": 11,
                "contract": "Sample.sol:Sample",
                "label": "owners",
                "offset": 0,
                "slot": "1",
                "type": "t_mapping(t_uint256,t_address)",
            },
        ],
    },
}


def storage_item(label, slot, type_id, offset=0):
    return {
        "astId": slot + 100,
        "contract": "Sample.sol:Sample",
        "label": label,
        "offset": offset,
        "slot": str(slot),
        "type": type_id,
    }


SAMPLE_LAYOUT = {
    "storage": [
        storage_item("small", 0, "t_uint8"),
        storage_item("flag", 0, "t_bool", offset=1),
        storage_item("owner", 0, "t_address", offset=2),
        storage_item("balances", 1, "t_mapping(t_address,t_uint256)"),
        storage_item("allowances", 2, "t_mapping(t_address,t_mapping(t_address,t_uint256))"),
        storage_item("arr", 3, "t_array(t_uint256)dyn_storage"),
        storage_item("fixedArr", 4, "t_array(t_uint64)3_storage"),
        storage_item("info", 5, "t_struct(Info)12_storage"),
        storage_item("name", 7, "t_string_storage"),
        storage_item("infos", 8, "t_mapping(t_address,t_struct(Info)12_storage)"),
        storage_item("byName", 9, "t_mapping(t_string_memory_ptr,t_uint256)"),
    ],
    "types": SAMPLE_TYPES,
}


@pytest.fixture
def sample_layout_dict():
    return SAMPLE_LAYOUT


@pytest.fixture
def sample_layout():
    return StorageLayout.from_solc(SAMPLE_LAYOUT)


# contract Nested {
#     Item[] items;                            // slot 0
#     mapping(address => uint256[]) lists;     // slot 1
# }
# struct Item { uint256 id; mapping(uint256 => address) owners; }
NESTED_TYPES = {
    "t_uint256": SAMPLE_TYPES["t_uint256"],
    "t_address": SAMPLE_TYPES["t_address"],
    "t_mapping(t_uint256,t_address)": SAMPLE_TYPES["t_mapping(t_uint256,t_address)"],
    "t_array(t_uint256)dyn_storage": SAMPLE_TYPES["t_array(t_uint256)dyn_storage"],
    "t_struct(Item)5_storage": {
        "encoding": "inplace",
        "label": "struct Nested.Item",
        "numberOfBytes": "64",
        "members": [
            {"astId": 2, "contract": "Nested.sol:Nested", "label": "id", "offset": 0, "slot": "0", "type": "t_uint256"},
            {
                "astId": 4,
                "contract": "Nested.sol:Nested",
                "label": "owners",
                "offset": 0,
                "slot": "1",
                "type": "t_mapping(t_uint256,t_address)",
            },
        ],
    },
    "t_array(t_struct(Item)5_storage)dyn_storage": {
        "encoding": "dynamic_array",
        "base": "t_struct(Item)5_storage",
        "label": "struct Nested.Item[]",
        "numberOfBytes": "32",
    },
    "t_mapping(t_address,t_array(t_uint256)dyn_storage)": {
        "encoding": "mapping",
        "key": "t_address",
        "label": "mapping(address => uint256[])",
        "numberOfBytes": "32",
        "value": "t_array(t_uint256)dyn_storage",
    },
}

NESTED_LAYOUT = {
    "storage": [
        storage_item("items", 0, "t_array(t_struct(Item)5_storage)dyn_storage"),
        storage_item("lists", 1, "t_mapping(t_address,t_array(t_uint256)dyn_storage)"),
    ],
    "types": NESTED_TYPES,
}


@pytest.fixture
def nested_layout():
    return StorageLayout.from_solc(NESTED_LAYOUT)


@pytest.fixture(autouse=True)
def default_structlog():
    """Run every test against structlog's default configuration."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()
