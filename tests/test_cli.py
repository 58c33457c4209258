import argparse
import json

import pytest
from eth_utils import keccak

from evmstate.cli import build_parser, load_abi, load_storage_layout, main, parse_known_length
from evmstate.exceptions import ConfigError, EvmStateError, LayoutError
from evmstate.logging_config import configure_logging

from conftest import ADDR_A, SAMPLE_LAYOUT

CONTRACT = "0x00000000000000000000000000000000000000c0"


def write_json(path, data):
    path.write_text(json.dumps(data))
    return str(path)


def test_load_raw_layout(tmp_path):
    path = write_json(tmp_path / "layout.json", SAMPLE_LAYOUT)
    assert load_storage_layout(path) == SAMPLE_LAYOUT


def test_load_foundry_artifact(tmp_path):
    path = write_json(tmp_path / "Sample.json", {"abi": [], "bytecode": {"object": "0x"}, "storageLayout": SAMPLE_LAYOUT})
    assert load_storage_layout(path) == SAMPLE_LAYOUT


def test_load_standard_json_output(tmp_path):
    output = {
        "contracts": {
            "src/Other.sol": {"Other": {"abi": [], "storageLayout": {"storage": [], "types": None}}},
            "src/Sample.sol": {"Sample": {"abi": [], "storageLayout": SAMPLE_LAYOUT}},
        }
    }
    path = write_json(tmp_path / "out.json", output)
    assert load_storage_layout(path, "Sample") == SAMPLE_LAYOUT
    assert load_storage_layout(path) == {"storage": [], "types": None}


def test_load_combined_json_with_string_layout(tmp_path):
    combined = {"contracts": {"Sample.sol:Sample": {"abi": "[]", "storage-layout": json.dumps(SAMPLE_LAYOUT)}}}
    path = write_json(tmp_path / "combined.json", combined)
    assert load_storage_layout(path, "Sample") == SAMPLE_LAYOUT


def test_missing_contract_or_layout_raises(tmp_path):
    combined = {"contracts": {"Sample.sol:Sample": {"abi": []}}}
    path = write_json(tmp_path / "combined.json", combined)
    with pytest.raises(LayoutError):
        load_storage_layout(path, "Token")
    with pytest.raises(LayoutError):
        load_storage_layout(path)
    with pytest.raises(FileNotFoundError):
        load_storage_layout(str(tmp_path / "missing.json"))


def test_load_abi(tmp_path):
    abi = [{"type": "function", "name": "f", "inputs": []}]
    assert load_abi(write_json(tmp_path / "abi.json", abi)) == abi
    assert load_abi(write_json(tmp_path / "artifact.json", {"abi": json.dumps(abi)})) == abi
    with pytest.raises(EvmStateError):
        load_abi(write_json(tmp_path / "bad.json", {"bytecode": "0x"}))


def test_parse_known_length():
    assert parse_known_length(f"{CONTRACT}:3=5") == (CONTRACT, 3, 5)
    assert parse_known_length(f"{CONTRACT}:0x3=0x10") == (CONTRACT, 3, 16)
    with pytest.raises(argparse.ArgumentTypeError):
        parse_known_length(f"{CONTRACT}=5")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_known_length("nonsense")


def test_label_command_writes_result(tmp_path):
    slot = "0x" + keccak(bytes(12) + bytes.fromhex(ADDR_A[2:]) + (1).to_bytes(32, "big")).hex()
    array_slot = int.from_bytes(keccak((3).to_bytes(32, "big")), "big") + 1
    capture = {
        "from": ADDR_A,
        "to": CONTRACT,
        "stateDiff": {
            CONTRACT: {
                "storage": {
                    slot: {"current": "0x0", "next": "0x64"},
                    hex(array_slot): {"current": "0x2"},
                }
            }
        },
    }
    capture_path = write_json(tmp_path / "capture.json", capture)
    layout_path = write_json(tmp_path / "layout.json", SAMPLE_LAYOUT)
    output_path = tmp_path / "result.json"

    exit_code = main(
        [
            "--log-level",
            "WARNING",
            "label",
            capture_path,
            "--layout",
            f"{CONTRACT}={layout_path}",
            "--known-length",
            f"{CONTRACT}:3=2",
            "--output",
            str(output_path),
        ]
    )

    assert exit_code == 0
    result = json.loads(output_path.read_text())
    storage = result[CONTRACT]["storage"]
    assert storage["balances"]["trace"][0]["next"]["decoded"] == 100
    assert storage["arr"]["trace"][0]["fullExpression"] == "arr[1]"


def test_invalid_bound_exits_with_code_2(tmp_path):
    capture_path = write_json(tmp_path / "capture.json", {"stateDiff": {}})
    assert main(["label", capture_path, "--max-mapping-depth", "0"]) == 2


def test_inconsistent_capture_exits_with_code_2(tmp_path):
    capture_path = write_json(tmp_path / "capture.json", {"stateDiff": {CONTRACT: {"storage": {"0x1": {"next": "0x1"}}}}})
    assert main(["label", capture_path]) == 2


def test_missing_capture_exits_with_code_1(tmp_path):
    assert main(["label", str(tmp_path / "missing.json")]) == 1


def test_layout_command_prints_variables(tmp_path, capsys):
    layout_path = write_json(tmp_path / "layout.json", SAMPLE_LAYOUT)
    assert main(["layout", layout_path]) == 0
    assert "Slot 9: byName" in capsys.readouterr().out


def test_invalid_bound_in_environment_exits_with_code_2(tmp_path, monkeypatch):
    capture_path = write_json(tmp_path / "capture.json", {"stateDiff": {}})
    monkeypatch.setenv("EVMSTATE_MAPPING_EXPLORATION_LIMIT", "lots")
    assert main(["label", capture_path]) == 2


def test_bounds_default_from_environment(monkeypatch):
    monkeypatch.setenv("EVMSTATE_MAX_MAPPING_DEPTH", "2")
    args = build_parser().parse_args(["label", "capture.json"])
    assert args.max_mapping_depth == 2
    assert args.mapping_exploration_limit == 1_000_000


def test_unknown_log_level_is_rejected(tmp_path, monkeypatch):
    capture_path = write_json(tmp_path / "capture.json", {"stateDiff": {}})
    with pytest.raises(SystemExit) as exc_info:
        main(["--log-level", "LOUD", "label", capture_path])
    assert exc_info.value.code == 2

    monkeypatch.setenv("EVMSTATE_LOG_LEVEL", "loud")
    assert main(["label", capture_path]) == 2


def test_log_level_is_case_insensitive():
    assert build_parser().parse_args(["--log-level", "debug", "label", "capture.json"]).log_level == "DEBUG"


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ConfigError, match="Unknown log level"):
        configure_logging("LOUD")
