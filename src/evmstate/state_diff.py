"""
Input data model: per-slot observations, account intrinsics and call captures.

Captures are produced by an external execution engine. Everything here is
validated once on the way in so the matching engine can assume well-formed,
normalized words.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .exceptions import InconsistentStateDiffError
from .hexutils import normalize_address, normalize_slot, slot_hex, to_word, word_hex

INTRINSIC_FIELDS = ("balance", "nonce", "code", "codeHash", "storageRoot")


@dataclass(frozen=True)
class SlotAccessObservation:
    """
    Raw values observed at one storage slot during a call.

    A missing `next` means the slot was only read.
    """

    address: str
    slot: int
    current: bytes
    next: Optional[bytes] = None

    @property
    def written(self) -> bool:
        return self.next is not None

    @property
    def max_value(self) -> int:
        """Largest of the current and next values, read as an integer."""
        values = [int.from_bytes(self.current, "big")]
        if self.next is not None:
            values.append(int.from_bytes(self.next, "big"))
        return max(values)

    def to_dict(self) -> Dict[str, Any]:
        result = {"slot": slot_hex(self.slot), "current": word_hex(self.current)}
        if self.next is not None:
            result["next"] = word_hex(self.next)
        return result


@dataclass(frozen=True)
class IntrinsicDiff:
    """Before/after values of an account field such as balance or nonce."""

    current: Any
    next: Any = None

    @property
    def modified(self) -> bool:
        return self.next is not None and self.next != self.current

    def to_dict(self) -> Dict[str, Any]:
        result = {"current": self.current, "modified": self.modified}
        if self.next is not None:
            result["next"] = self.next
        return result


@dataclass
class AccountStateDiff:
    """Storage observations and intrinsic diffs for one account."""

    address: str
    storage: Dict[int, SlotAccessObservation] = field(default_factory=dict)
    intrinsics: Dict[str, IntrinsicDiff] = field(default_factory=dict)


def _split_pair(value: Any) -> tuple:
    if isinstance(value, Mapping):
        return value.get("current"), value.get("next")
    return value, None


def parse_account_diff(address: str, raw: Mapping[str, Any]) -> AccountStateDiff:
    """
    Parse the diff of one account.

    Args:
        address: Account address
        raw: Mapping with optional intrinsic fields and a `storage` mapping
            of slot to {current, next}

    Raises:
        InconsistentStateDiffError: If a slot has a next value but no current value
    """
    address = normalize_address(address)
    account = AccountStateDiff(address=address)

    for name in INTRINSIC_FIELDS:
        if name not in raw:
            continue
        current, next_value = _split_pair(raw[name])
        if current is None and next_value is not None:
            raise InconsistentStateDiffError(address, name, "next value without a current value")
        account.intrinsics[name] = IntrinsicDiff(current=current, next=next_value)

    for raw_slot, raw_value in (raw.get("storage") or {}).items():
        current, next_value = _split_pair(raw_value)
        if current is None:
            if next_value is not None:
                raise InconsistentStateDiffError(address, str(raw_slot), "next value without a current value")
            raise InconsistentStateDiffError(address, str(raw_slot), "missing current value")
        try:
            slot = normalize_slot(raw_slot)
            observation = SlotAccessObservation(
                address=address,
                slot=slot,
                current=to_word(current),
                next=to_word(next_value) if next_value is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise InconsistentStateDiffError(address, str(raw_slot), str(e)) from e
        account.storage[slot] = observation

    return account


def parse_state_diff(raw: Mapping[str, Any]) -> Dict[str, AccountStateDiff]:
    """Parse a mapping of address to account diff."""
    accounts: Dict[str, AccountStateDiff] = {}
    for address, account_raw in raw.items():
        account = parse_account_diff(address, account_raw or {})
        accounts[account.address] = account
    return accounts


@dataclass
class CallCapture:
    """
    Everything captured about one call that the labeling engine consumes.

    Attributes:
        state_diff: Per-address storage observations and intrinsic diffs
        addresses: Addresses touched or created during the call
        struct_logs: Raw opcode-level trace entries (op, stack)
        calldata: Call input, used to decode arguments with the ABI
        decoded_args: Pre-decoded arguments as {"type", "value"} entries
        tx_hash: Transaction hash, when the call was a mined transaction
        from_address: Caller
        to_address: Callee
    """

    state_diff: Dict[str, AccountStateDiff] = field(default_factory=dict)
    addresses: List[str] = field(default_factory=list)
    struct_logs: List[Mapping[str, Any]] = field(default_factory=list)
    calldata: Optional[str] = None
    decoded_args: Optional[List[Mapping[str, Any]]] = None
    tx_hash: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None

    @property
    def touched_addresses(self) -> List[str]:
        """Touched addresses in first-seen order, normalized and without duplicates."""
        seen: Dict[str, None] = {}
        sources: Iterable[Optional[str]] = [self.from_address, self.to_address, *self.addresses, *self.state_diff]
        for address in sources:
            if address:
                seen.setdefault(normalize_address(address), None)
        return list(seen)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CallCapture":
        """
        Build a capture from its JSON form.

        Recognized keys: stateDiff, addresses, structLogs (or trace.structLogs),
        calldata (or input), args, txHash, from, to.
        """
        struct_logs = data.get("structLogs")
        if struct_logs is None and isinstance(data.get("trace"), Mapping):
            struct_logs = data["trace"].get("structLogs")
        return cls(
            state_diff=parse_state_diff(data.get("stateDiff") or {}),
            addresses=list(data.get("addresses") or []),
            struct_logs=list(struct_logs or []),
            calldata=data.get("calldata", data.get("input")),
            decoded_args=data.get("args"),
            tx_hash=data.get("txHash"),
            from_address=data.get("from"),
            to_address=data.get("to"),
        )
