#!/usr/bin/env python3
"""
Command line entry point for labeling captured state diffs.

Examples:
    evmstate label capture.json --layout 0xabc...=Token.json --abi 0xabc...=Token.abi.json
    evmstate layout Token.json --contract-name Token
"""

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from .config import ENV_PREFIX, ExploreConfig
from .exceptions import ConfigError, EvmStateError, LayoutError
from .hexutils import normalize_address, normalize_slot
from .layout import StorageLayout
from .logging_config import LOG_LEVELS, configure_logging
from .state_diff import CallCapture
from .tracer import Tracer

logger = structlog.get_logger()


def _read_json(file_path: str) -> Any:
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, "r") as f:
        return json.load(f)


def _is_source_unit(entry: Any) -> bool:
    """Whether a `contracts` entry is a standard-JSON source unit holding named contracts."""
    if not isinstance(entry, Mapping) or not entry:
        return False
    if "storageLayout" in entry or "storage-layout" in entry:
        return False
    return all(isinstance(value, Mapping) for value in entry.values())


def _find_contract(contracts: Mapping[str, Any], contract_name: Optional[str]) -> Mapping[str, Any]:
    """Pick a contract from a combined.json `contracts` map or a standard-JSON nested one."""
    flat: Dict[str, Mapping[str, Any]] = {}
    for key, entry in contracts.items():
        if _is_source_unit(entry):
            for name, contract in entry.items():
                flat[f"{key}:{name}"] = contract
        else:
            flat[key] = entry

    if not flat:
        raise LayoutError("Compilation output contains no contracts")
    if contract_name is None:
        key = next(iter(flat))
        logger.info("Using first contract", contract=key)
        return flat[key]
    for key, contract in flat.items():
        if key.endswith(f":{contract_name}") or key.endswith(f"/{contract_name}") or key == contract_name:
            logger.info("Found contract", contract=contract_name, key=key)
            return contract
    raise LayoutError(f"Contract {contract_name} not found in compilation output")


def load_storage_layout(file_path: str, contract_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Load solc storage layout metadata from a file.

    Supports:
    - raw `storageLayout` output ({storage, types})
    - solc standard-JSON output and combined.json (`storage-layout`)
    - Hardhat/Foundry artifacts carrying a `storageLayout` key

    Args:
        file_path: Path to the JSON file
        contract_name: Contract to pick when the file holds several

    Raises:
        FileNotFoundError: If the file doesn't exist
        LayoutError: If no storage layout can be found
    """
    artifact = _read_json(file_path)
    if not isinstance(artifact, Mapping):
        raise LayoutError(f"Unrecognized storage layout file: {file_path}")

    if "storage" in artifact and "types" in artifact:
        return dict(artifact)

    if "storageLayout" in artifact:
        return dict(artifact["storageLayout"])

    if "contracts" in artifact:
        contract = _find_contract(artifact["contracts"], contract_name)
        layout = contract.get("storageLayout", contract.get("storage-layout"))
        if isinstance(layout, str):
            layout = json.loads(layout)
        if isinstance(layout, Mapping):
            return dict(layout)

    raise LayoutError(f"No storage layout found in {file_path}")


def load_abi(file_path: str) -> List[Mapping[str, Any]]:
    """Load an ABI from a plain ABI file or any artifact with an `abi` key."""
    artifact = _read_json(file_path)
    if isinstance(artifact, Mapping):
        artifact = artifact.get("abi")
        if isinstance(artifact, str):
            artifact = json.loads(artifact)
    if not isinstance(artifact, list):
        raise EvmStateError(f"No ABI found in {file_path}")
    return artifact


def _split_assignment(value: str, separator: str = "=") -> Tuple[str, str]:
    if separator not in value:
        raise argparse.ArgumentTypeError(f"Expected KEY{separator}VALUE, got {value!r}")
    key, _, rest = value.partition(separator)
    return key.strip(), rest.strip()


def parse_known_length(value: str) -> Tuple[str, int, int]:
    """Parse ADDRESS:SLOT=LENGTH."""
    target, length = _split_assignment(value)
    address, _, slot = target.partition(":")
    if not slot:
        raise argparse.ArgumentTypeError(f"Expected ADDRESS:SLOT=LENGTH, got {value!r}")
    try:
        return normalize_address(address), normalize_slot(slot if slot.startswith("0x") else int(slot)), int(length, 0)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid known length {value!r}: {e}") from e


def _env_log_level() -> str:
    level = os.environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO").strip().upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"{ENV_PREFIX}LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
    return level


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argument parser. Defaults come from EVMSTATE_* variables.

    Raises:
        ConfigError: If an EVMSTATE_* variable holds an invalid value
    """
    env_config = ExploreConfig.from_env()

    parser = argparse.ArgumentParser(
        prog="evmstate",
        description="Label EVM storage slot accesses with variable names",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=_env_log_level(),
        help="Logging level",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    label = subparsers.add_parser(
        "label",
        help="Label a captured call",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    label.add_argument("capture", help="Path to the call capture JSON file")
    label.add_argument(
        "--layout",
        action="append",
        default=[],
        metavar="ADDRESS=FILE",
        help="Storage layout file for a contract address (repeatable)",
    )
    label.add_argument(
        "--abi",
        action="append",
        default=[],
        metavar="ADDRESS=FILE",
        help="ABI file for a contract address (repeatable)",
    )
    label.add_argument(
        "--contract-name",
        help="Contract to pick from layout files holding several contracts",
    )
    label.add_argument(
        "--known-length",
        action="append",
        default=[],
        type=parse_known_length,
        metavar="ADDRESS:SLOT=N",
        help="Length of a dynamic array not observed in the capture (repeatable)",
    )
    label.add_argument("--output", "-o", help="Write the result to this file instead of stdout")

    bounds = label.add_argument_group("Exploration bounds (-1 disables a bound)")
    bounds.add_argument(
        "--mapping-exploration-limit",
        type=int,
        default=env_config.mapping_exploration_limit,
        help="Key combinations tried per mapping variable",
    )
    bounds.add_argument(
        "--max-mapping-depth",
        type=int,
        default=env_config.max_mapping_depth,
        help="Nested container levels followed from a root mapping",
    )
    bounds.add_argument(
        "--early-termination-threshold",
        type=int,
        default=env_config.early_termination_threshold,
        help="Resolved slots after which a variable stops exploring",
    )

    layout = subparsers.add_parser("layout", help="Print the variables of a storage layout")
    layout.add_argument("file", help="Storage layout or artifact JSON file")
    layout.add_argument("--contract-name", help="Contract to pick from files holding several contracts")
    return parser


def run_label(args: argparse.Namespace) -> Dict[str, Any]:
    config = ExploreConfig(
        mapping_exploration_limit=args.mapping_exploration_limit,
        max_mapping_depth=args.max_mapping_depth,
        early_termination_threshold=args.early_termination_threshold,
    )

    tracer = Tracer(config=config)
    for assignment in args.layout:
        address, file_path = _split_assignment(assignment)
        tracer.register_layout(address, load_storage_layout(file_path, args.contract_name))
    for assignment in args.abi:
        address, file_path = _split_assignment(assignment)
        tracer.register_abi(address, load_abi(file_path))

    known_lengths: Dict[str, Dict[int, int]] = {}
    for address, slot, length in args.known_length:
        known_lengths.setdefault(address, {})[slot] = length

    capture = CallCapture.from_dict(_read_json(args.capture))
    return tracer.trace(capture, known_lengths).to_dict()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Parse arguments and run the requested command.

    Returns:
        Exit code (0 for success, 2 for invalid input, 1 for other errors)
    """
    try:
        parser = build_parser()
    except ConfigError as e:
        # logging is not configured yet
        print(f"evmstate: error: {e}", file=sys.stderr)
        return 2
    args = parser.parse_args(argv)
    configure_logging(log_level=args.log_level, json_logs=args.json_logs)

    try:
        if args.command == "layout":
            layout = StorageLayout.from_solc(load_storage_layout(args.file, args.contract_name))
            print(layout)
            return 0

        result = run_label(args)
        output = json.dumps(result, indent=2, default=str)
        if args.output:
            with open(args.output, "w") as f:
                f.write(output + "\n")
            logger.info("Results saved", path=args.output)
        else:
            print(output)
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    except EvmStateError as e:
        logger.error("Invalid input", error=str(e))
        return 2

    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not read input", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
