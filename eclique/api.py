"""User facing API to inspect the signer set and steer the voting of a clique engine."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .clique import Clique
from .errors import CliqueError, UnknownBlockError
from .header import DIFF_IN_TURN, HASH_LENGTH, Header
from .snapshot import Snapshot

LATEST_BLOCK = "latest"
STATUS_BLOCKS = 64

_UINT64 = 2**64
_BLOCK_TAGS = {
    "safe": -4,
    "finalized": -3,
    "latest": -2,
    "pending": -1,
    "earliest": 0,
}
_QUANTITY = re.compile(r"0[xX](0|[1-9a-fA-F][0-9a-fA-F]{0,15})")

_HEADER_FIELDS = (
    "parent_hash",
    "uncle_hash",
    "coinbase",
    "root",
    "tx_hash",
    "receipt_hash",
    "bloom",
    "difficulty",
    "number",
    "gas_limit",
    "gas_used",
    "time",
    "extra",
    "mix_digest",
    "nonce",
    "base_fee",
    "withdrawals_hash",
    "blob_gas_used",
    "excess_blob_gas",
    "parent_beacon_root",
    "requests_hash",
)
_MANDATORY_FIELDS = 15
_INT_FIELDS = frozenset(
    {
        "difficulty",
        "number",
        "gas_limit",
        "gas_used",
        "time",
        "base_fee",
        "blob_gas_used",
        "excess_blob_gas",
    }
)

BlockRef = Union[None, int, str, bytes, bytearray]


@dataclass
class Status:
    """Signing activity over the most recent blocks."""

    inturn_percent: float
    signing_status: dict[bytes, int] = field(default_factory=dict)
    num_blocks: int = 0


def _decode_length(data: bytes, pos: int, size: int) -> int:
    raw = data[pos: pos + size]
    if len(raw) != size:
        raise ValueError("rlp: value size exceeds available input length")
    if raw[0] == 0:
        raise ValueError("rlp: non-canonical size information")
    length = int.from_bytes(raw, "big")
    if length < 56:
        raise ValueError("rlp: non-canonical size information")
    return length


def _decode_item(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise ValueError("rlp: unexpected end of input")
    prefix = data[pos]
    if prefix < 0x80:
        return data[pos: pos + 1], pos + 1
    if prefix <= 0xBF:
        if prefix <= 0xB7:
            start, length = pos + 1, prefix - 0x80
        else:
            size = prefix - 0xB7
            length = _decode_length(data, pos + 1, size)
            start = pos + 1 + size
        end = start + length
        if end > len(data):
            raise ValueError("rlp: value size exceeds available input length")
        value = data[start:end]
        if length == 1 and value[0] < 0x80:
            raise ValueError("rlp: non-canonical single byte encoding")
        return value, end
    if prefix <= 0xF7:
        start, length = pos + 1, prefix - 0xC0
    else:
        size = prefix - 0xF7
        length = _decode_length(data, pos + 1, size)
        start = pos + 1 + size
    end = start + length
    if end > len(data):
        raise ValueError("rlp: value size exceeds available input length")
    items = []
    cursor = start
    while cursor < end:
        item, cursor = _decode_item(data, cursor)
        items.append(item)
    if cursor != end:
        raise ValueError("rlp: list elements exceed list size")
    return items, end


def _rlp_decode(data: bytes) -> Any:
    item, end = _decode_item(bytes(data), 0)
    if end != len(data):
        raise ValueError("rlp: input contains more than one value")
    return item


def _header_from_items(items: Any) -> Header:
    if not isinstance(items, list):
        raise ValueError("rlp: expected input list for header")
    if len(items) < _MANDATORY_FIELDS:
        raise ValueError("rlp: too few elements for header")
    if len(items) > len(_HEADER_FIELDS):
        raise ValueError("rlp: input list has too many elements for header")
    values = {}
    for name, item in zip(_HEADER_FIELDS, items):
        if isinstance(item, list):
            raise ValueError(f"rlp: expected string for header field {name}")
        if name in _INT_FIELDS:
            if item[:1] == b"\x00":
                raise ValueError(f"rlp: non-canonical integer for header field {name}")
            values[name] = int.from_bytes(item, "big")
        else:
            values[name] = item
    return Header(**values)


def _decode_block_or_header(blob: bytes) -> Header:
    items = _rlp_decode(blob)
    if isinstance(items, list) and items and isinstance(items[0], list):
        return _header_from_items(items[0])
    return _header_from_items(items)


@dataclass(frozen=True)
class _Reference:
    kind: str
    value: Any = None
    label: str = ""


def _parse_ref(block_ref: BlockRef) -> _Reference:
    if block_ref is None:
        return _Reference("current")
    if isinstance(block_ref, bool):
        raise TypeError("block reference must not be a bool")
    if isinstance(block_ref, int):
        return _Reference("number", block_ref, str(block_ref))
    if isinstance(block_ref, (bytes, bytearray)):
        data = bytes(block_ref)
        if len(data) == HASH_LENGTH:
            return _Reference("hash", data, "0x" + data.hex())
        return _Reference("rlp", data) if data else _Reference("current")
    if isinstance(block_ref, str):
        text = block_ref.strip()
        if text in _BLOCK_TAGS:
            return _Reference("number", _BLOCK_TAGS[text], text)
        if text.startswith(("0x", "0X")) and len(text) == 2 + 2 * HASH_LENGTH:
            try:
                data = bytes.fromhex(text[2:])
            except ValueError:
                pass
            else:
                return _Reference("hash", data, "0x" + data.hex())
        if _QUANTITY.fullmatch(text):
            number = int(text, 16)
            return _Reference("number", number, str(number))
        if not text.startswith(("0x", "0X")):
            raise ValueError(f"hex string without 0x prefix: {text!r}")
        try:
            blob = bytes.fromhex(text[2:])
        except ValueError as exc:
            raise ValueError(f"invalid hex string: {text!r}") from exc
        return _Reference("rlp", blob) if blob else _Reference("current")
    raise TypeError(f"unsupported block reference of type {type(block_ref).__name__}")


class CliqueAPI:
    """Controls the signer and voting of a clique engine over a chain view."""

    def __init__(self, chain: Any, clique: Clique) -> None:
        self.chain = chain
        self.clique = clique

    def _header_at(self, number: Union[None, int, str]) -> Optional[Header]:
        if number is None or number == LATEST_BLOCK:
            return self.chain.current_header()
        return self.chain.get_header_by_number(int(number))

    def _snapshot_of(self, header: Optional[Header]) -> Snapshot:
        if header is None:
            raise UnknownBlockError()
        return self.clique.snapshot(self.chain, header.number, header.hash(), None)

    def get_snapshot(self, number: Union[None, int, str] = None) -> Snapshot:
        """Return the snapshot at block ``number``, or at the head when None or latest."""
        return self._snapshot_of(self._header_at(number))

    def get_snapshot_at_hash(self, block_hash: bytes) -> Snapshot:
        """Return the snapshot at the block with the given hash."""
        return self._snapshot_of(self.chain.get_header_by_hash(bytes(block_hash)))

    def get_signers(self, number: Union[None, int, str] = None) -> list[bytes]:
        """Return the authorized signers at block ``number`` in ascending order."""
        return self._snapshot_of(self._header_at(number)).signers()

    def get_signers_at_hash(self, block_hash: bytes) -> list[bytes]:
        """Return the authorized signers at the block with the given hash."""
        return self._snapshot_of(self.chain.get_header_by_hash(bytes(block_hash))).signers()

    def proposals(self) -> dict[bytes, bool]:
        """Return the proposals this node currently votes on."""
        return self.clique.proposals()

    def propose(self, address: bytes, authorize: bool) -> None:
        """Add a proposal to authorize or drop ``address``."""
        self.clique.propose(address, authorize)

    def discard(self, address: bytes) -> None:
        """Stop voting on ``address``."""
        self.clique.discard(address)

    def status(self) -> Status:
        """Summarize in-turn sealing and per-signer activity over the last blocks."""
        header = self.chain.current_header()
        if header is None:
            raise UnknownBlockError()
        snap = self._snapshot_of(header)
        end = header.number
        num_blocks = STATUS_BLOCKS
        start = end - num_blocks
        if num_blocks > end:
            start = 1
            num_blocks = (end - start) % _UINT64
        signing_status = {signer: 0 for signer in snap.signers()}
        optimals = 0
        for number in range(start, end):
            block = self.chain.get_header_by_number(number)
            if block is None:
                raise CliqueError(f"missing block {number}")
            if block.difficulty == DIFF_IN_TURN:
                optimals += 1
            sealer = self.clique.author(block)
            signing_status[sealer] = signing_status.get(sealer, 0) + 1
        percent = 100 * optimals / num_blocks if num_blocks else math.nan
        return Status(inturn_percent=percent, signing_status=signing_status, num_blocks=num_blocks)

    def get_signer(self, block_ref: BlockRef = None) -> bytes:
        """Return the sealer of a block given by number, hash or RLP of a block or header.

        None selects the current head. A 32 byte value or a 66 character hex
        string is a hash; other bytes or hex strings are RLP.
        """
        ref = _parse_ref(block_ref)
        if ref.kind == "rlp":
            return self.clique.author(_decode_block_or_header(ref.value))
        if ref.kind == "current":
            header = self.chain.current_header()
        elif ref.kind == "hash":
            header = self.chain.get_header_by_hash(ref.value)
        else:
            header = self.chain.get_header_by_number(ref.value)
        if header is None:
            raise CliqueError(f"missing block {ref.label or 'latest'}")
        return self.clique.author(header)