"""Consensus rules that a clique header must satisfy on its own and against its parent."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from .errors import (
    FutureBlockError,
    InvalidHeaderError,
    InvalidVoteError,
    MissingSignatureError,
    UnknownAncestorError,
    UnknownBlockError,
)
from .header import (
    ADDRESS_LENGTH,
    DIFF_IN_TURN,
    DIFF_NO_TURN,
    EMPTY_UNCLE_HASH,
    EMPTY_WITHDRAWALS_HASH,
    EXTRA_SEAL,
    EXTRA_VANITY,
    MIN_HASH,
    NONCE_AUTH_VOTE,
    NONCE_DROP_VOTE,
    ZERO_ADDRESS,
    ZERO_HASH,
    Header,
)

EPOCH_LENGTH = 30000
MAX_GAS_LIMIT = 0x7FFFFFFFFFFFFFFF
MIN_GAS_LIMIT = 5000
GAS_LIMIT_BOUND_DIVISOR = 1024
ELASTICITY_MULTIPLIER = 2
BASE_FEE_CHANGE_DENOMINATOR = 8
INITIAL_BASE_FEE = 1_000_000_000


@dataclass
class CliqueConfig:
    """Clique engine parameters: block period in seconds and epoch length."""

    period: int = 0
    epoch: int = EPOCH_LENGTH

    def __post_init__(self) -> None:
        if self.epoch == 0:
            self.epoch = EPOCH_LENGTH


@dataclass(frozen=True)
class ChainConfig:
    """Fork activation points of the chain; None means never activated."""

    london_block: Optional[int] = None
    cancun_time: Optional[int] = None

    def is_london(self, number: Optional[int]) -> bool:
        """Tell whether block ``number`` is at or after the London fork."""
        return self.london_block is not None and number is not None and number >= self.london_block

    def is_cancun(self, number: Optional[int], time: int) -> bool:
        """Tell whether a block with this number and timestamp is in Cancun."""
        return self.is_london(number) and self.cancun_time is not None and time >= self.cancun_time


def verify_standalone_fields(
    header: Header,
    config: CliqueConfig,
    chain_config: ChainConfig,
    now: Optional[int],
) -> None:
    """Check the header fields that need no other header; raise on a violation."""
    if header.number is None:
        raise UnknownBlockError()
    number = header.number
    if now is None:
        now = int(time.time())
    if header.time > now:
        raise FutureBlockError()

    checkpoint = number % config.epoch == 0
    if checkpoint and header.coinbase != ZERO_ADDRESS:
        raise InvalidHeaderError("beneficiary in checkpoint block non-zero")
    if header.nonce not in (NONCE_AUTH_VOTE, NONCE_DROP_VOTE):
        raise InvalidVoteError()
    if checkpoint and header.nonce != NONCE_DROP_VOTE:
        raise InvalidHeaderError("vote nonce in checkpoint block non-zero")

    if len(header.extra) < EXTRA_VANITY:
        raise InvalidHeaderError("extra-data 32 byte vanity prefix missing")
    if len(header.extra) < EXTRA_VANITY + EXTRA_SEAL:
        raise MissingSignatureError()
    signers_bytes = len(header.extra) - EXTRA_VANITY - EXTRA_SEAL
    if not checkpoint and signers_bytes != 0:
        raise InvalidHeaderError("non-checkpoint block contains extra signer list")
    if checkpoint and signers_bytes % ADDRESS_LENGTH != 0:
        raise InvalidHeaderError("invalid signer list on checkpoint block")

    if header.mix_digest != ZERO_HASH:
        raise InvalidHeaderError("non-zero mix digest")
    if header.uncle_hash != EMPTY_UNCLE_HASH:
        raise InvalidHeaderError("non empty uncle hash")
    if number > 0 and header.difficulty not in (DIFF_IN_TURN, DIFF_NO_TURN):
        raise InvalidHeaderError("invalid difficulty")
    if header.gas_limit > MAX_GAS_LIMIT:
        raise InvalidHeaderError(
            f"invalid gasLimit: have {header.gas_limit}, max {MAX_GAS_LIMIT}"
        )

    cancun = chain_config.is_cancun(header.number, header.time)
    if not cancun and header.withdrawals_hash is not None:
        raise InvalidHeaderError(
            f"invalid withdrawalsHash: have {header.withdrawals_hash.hex()}, "
            "expected nil before Cancun"
        )
    if cancun:
        if header.withdrawals_hash is None:
            raise InvalidHeaderError(
                "invalid withdrawalsHash: nil, expected EmptyWithdrawalsHash after Cancun"
            )
        if header.withdrawals_hash != EMPTY_WITHDRAWALS_HASH:
            raise InvalidHeaderError(
                f"invalid withdrawalsHash: have {header.withdrawals_hash.hex()}, "
                "expected EmptyWithdrawalsHash after Cancun"
            )


def verify_gas_limit(parent_gas_limit: int, gas_limit: int) -> None:
    """Check that the gas limit moved by less than 1/1024 of the parent's."""
    diff = abs(parent_gas_limit - gas_limit)
    limit = parent_gas_limit // GAS_LIMIT_BOUND_DIVISOR
    if diff >= limit:
        raise InvalidHeaderError(
            f"invalid gas limit: have {gas_limit}, want {parent_gas_limit} +-= {limit - 1}"
        )
    if gas_limit < MIN_GAS_LIMIT:
        raise InvalidHeaderError(f"invalid gas limit below {MIN_GAS_LIMIT}")


def _calc_base_fee(parent: Header) -> int:
    if parent.base_fee is None:
        return INITIAL_BASE_FEE
    target = parent.gas_limit // ELASTICITY_MULTIPLIER
    if parent.gas_used == target:
        return parent.base_fee
    if parent.gas_used > target:
        delta = parent.base_fee * (parent.gas_used - target) // target // BASE_FEE_CHANGE_DENOMINATOR
        return parent.base_fee + max(delta, 1)
    delta = parent.base_fee * (target - parent.gas_used) // target // BASE_FEE_CHANGE_DENOMINATOR
    return max(parent.base_fee - delta, 0)


def verify_eip1559_header(parent: Header, header: Header) -> None:
    """Check the gas limit and base fee of a London header against its parent.

    A parent without a base fee is taken to be the last block before the fork.
    """
    parent_gas_limit = parent.gas_limit
    if parent.base_fee is None:
        parent_gas_limit *= ELASTICITY_MULTIPLIER
    verify_gas_limit(parent_gas_limit, header.gas_limit)
    if header.base_fee is None:
        raise InvalidHeaderError("header is missing baseFee")
    expected = _calc_base_fee(parent)
    if header.base_fee != expected:
        raise InvalidHeaderError(
            f"invalid baseFee: have {header.base_fee}, want {expected}, "
            f"parentBaseFee {parent.base_fee}, parentGasUsed {parent.gas_used}"
        )


def enforce_cancun_header_invariants(header: Header) -> None:
    """Require zero blob gas fields and a zero parent beacon root."""
    if (
        header.parent_beacon_root is None
        or header.blob_gas_used is None
        or header.excess_blob_gas is None
    ):
        root = None if header.parent_beacon_root is None else header.parent_beacon_root.hex()
        raise InvalidHeaderError(
            f"invalid header with nil values: {root}, "
            f"{header.blob_gas_used}, {header.excess_blob_gas}"
        )
    if header.blob_gas_used != 0:
        raise InvalidHeaderError(f"invalid BlobGasUsed: have {header.blob_gas_used}, expected 0")
    if header.excess_blob_gas != 0:
        raise InvalidHeaderError(
            f"invalid ExcessBlobGas: have {header.excess_blob_gas}, expected 0"
        )
    if header.parent_beacon_root != MIN_HASH:
        raise InvalidHeaderError(
            f"invalid parentBeaconRoot, have 0x{header.parent_beacon_root.hex()}, "
            "expected zero hash"
        )


def _verify_blob_fields_present(header: Header) -> None:
    if header.excess_blob_gas is None:
        raise InvalidHeaderError("header is missing excessBlobGas")
    if header.blob_gas_used is None:
        raise InvalidHeaderError("header is missing blobGasUsed")


def verify_parent_fields(
    header: Header,
    parent: Optional[Header],
    config: CliqueConfig,
    chain_config: ChainConfig,
) -> None:
    """Check the header fields that depend on its parent; the genesis always passes."""
    number = header.number
    if number == 0:
        return
    if parent is None or parent.number != number - 1 or parent.hash() != header.parent_hash:
        raise UnknownAncestorError()
    if parent.time + config.period > header.time:
        raise InvalidHeaderError("invalid timestamp")
    if header.gas_used > header.gas_limit:
        raise InvalidHeaderError(
            f"invalid gasUsed: have {header.gas_used}, gasLimit {header.gas_limit}"
        )

    if not chain_config.is_london(number):
        if header.base_fee is not None:
            raise InvalidHeaderError(
                f"invalid baseFee before fork: have {header.base_fee}, want <nil>"
            )
        verify_gas_limit(parent.gas_limit, header.gas_limit)
    else:
        verify_eip1559_header(parent, header)

    if chain_config.is_cancun(number, header.time):
        _verify_blob_fields_present(header)
        enforce_cancun_header_invariants(header)
    elif header.excess_blob_gas is not None:
        raise InvalidHeaderError(
            f"invalid excessBlobGas: have {header.excess_blob_gas}, expected nil"
        )
    elif header.blob_gas_used is not None:
        raise InvalidHeaderError(f"invalid blobGasUsed: have {header.blob_gas_used}, expected nil")
    elif header.parent_beacon_root is not None:
        raise InvalidHeaderError(
            f"invalid parentBeaconRoot, have 0x{header.parent_beacon_root.hex()}, expected nil"
        )