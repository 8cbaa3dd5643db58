"""Block headers, RLP encoding, Keccak hashing and the clique seal signature."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from Crypto.Hash import keccak

from .errors import InvalidHeaderError, MissingSignatureError

ADDRESS_LENGTH = 20
HASH_LENGTH = 32
SIGNATURE_LENGTH = 65
BLOOM_LENGTH = 256
NONCE_LENGTH = 8

EXTRA_VANITY = 32
EXTRA_SEAL = SIGNATURE_LENGTH

ZERO_HASH = bytes(HASH_LENGTH)
ZERO_ADDRESS = bytes(ADDRESS_LENGTH)
MIN_HASH = ZERO_HASH

NONCE_AUTH_VOTE = b"\xff" * NONCE_LENGTH
NONCE_DROP_VOTE = bytes(NONCE_LENGTH)

DIFF_IN_TURN = 2
DIFF_NO_TURN = 1

# secp256k1 domain parameters
_P = 2**256 - 2**32 - 977
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

_Point = Optional[tuple[int, int]]
PrivateKey = Union[bytes, int]


def keccak256(data: bytes) -> bytes:
    """Return the legacy Keccak-256 digest of ``data``."""
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def _length_prefix(length: int, offset: int) -> bytes:
    if length < 56:
        return bytes([offset + length])
    encoded = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([offset + 55 + len(encoded)]) + encoded


def rlp_encode(item) -> bytes:
    """RLP-encode bytes, non-negative integers and (nested) lists of them."""
    if isinstance(item, (bytes, bytearray, memoryview)):
        data = bytes(item)
        if len(data) == 1 and data[0] < 0x80:
            return data
        return _length_prefix(len(data), 0x80) + data
    if isinstance(item, int):
        if item < 0:
            raise ValueError(f"cannot RLP-encode negative integer {item}")
        return rlp_encode(item.to_bytes((item.bit_length() + 7) // 8, "big"))
    if isinstance(item, (list, tuple)):
        payload = b"".join(rlp_encode(element) for element in item)
        return _length_prefix(len(payload), 0xC0) + payload
    raise TypeError(f"cannot RLP-encode value of type {type(item).__name__}")


EMPTY_UNCLE_HASH = keccak256(rlp_encode([]))
EMPTY_WITHDRAWALS_HASH = keccak256(rlp_encode(b""))

_FIXED_LENGTHS = {
    "parent_hash": HASH_LENGTH,
    "uncle_hash": HASH_LENGTH,
    "coinbase": ADDRESS_LENGTH,
    "root": HASH_LENGTH,
    "tx_hash": HASH_LENGTH,
    "receipt_hash": HASH_LENGTH,
    "bloom": BLOOM_LENGTH,
    "mix_digest": HASH_LENGTH,
    "nonce": NONCE_LENGTH,
}
_OPTIONAL_HASHES = ("withdrawals_hash", "parent_beacon_root", "requests_hash")


@dataclass
class Header:
    """An execution block header."""

    parent_hash: bytes = ZERO_HASH
    uncle_hash: bytes = EMPTY_UNCLE_HASH
    coinbase: bytes = ZERO_ADDRESS
    root: bytes = ZERO_HASH
    tx_hash: bytes = ZERO_HASH
    receipt_hash: bytes = ZERO_HASH
    bloom: bytes = field(default=bytes(BLOOM_LENGTH))
    difficulty: Optional[int] = None
    number: Optional[int] = None
    gas_limit: int = 0
    gas_used: int = 0
    time: int = 0
    extra: bytes = b""
    mix_digest: bytes = ZERO_HASH
    nonce: bytes = NONCE_DROP_VOTE
    base_fee: Optional[int] = None
    withdrawals_hash: Optional[bytes] = None
    blob_gas_used: Optional[int] = None
    excess_blob_gas: Optional[int] = None
    parent_beacon_root: Optional[bytes] = None
    requests_hash: Optional[bytes] = None

    def __post_init__(self) -> None:
        for name, length in _FIXED_LENGTHS.items():
            value = bytes(getattr(self, name))
            if len(value) != length:
                raise ValueError(f"{name} must be {length} bytes, got {len(value)}")
            setattr(self, name, value)
        for name in _OPTIONAL_HASHES:
            value = getattr(self, name)
            if value is not None:
                value = bytes(value)
                if len(value) != HASH_LENGTH:
                    raise ValueError(f"{name} must be {HASH_LENGTH} bytes, got {len(value)}")
                setattr(self, name, value)
        self.extra = bytes(self.extra)

    def _rlp_fields(self) -> list:
        fields = [
            self.parent_hash,
            self.uncle_hash,
            self.coinbase,
            self.root,
            self.tx_hash,
            self.receipt_hash,
            self.bloom,
            self.difficulty or 0,
            self.number or 0,
            self.gas_limit,
            self.gas_used,
            self.time,
            self.extra,
            self.mix_digest,
            self.nonce,
        ]
        optional = [
            self.base_fee,
            self.withdrawals_hash,
            self.blob_gas_used,
            self.excess_blob_gas,
            self.parent_beacon_root,
            self.requests_hash,
        ]
        present = [position for position, value in enumerate(optional) if value is not None]
        if present:
            # Absent fields before the last present one encode as the empty string.
            fields.extend(b"" if value is None else value for value in optional[: present[-1] + 1])
        return fields

    def hash(self) -> bytes:
        """Return the Keccak-256 hash of the RLP-encoded header."""
        return keccak256(rlp_encode(self._rlp_fields()))

    def copy(self) -> Header:
        """Return an independent copy of the header."""
        return replace(self)


def _sig_header_fields(header: Header) -> list:
    if len(header.extra) < SIGNATURE_LENGTH:
        raise MissingSignatureError()
    fields = [
        header.parent_hash,
        header.uncle_hash,
        header.coinbase,
        header.root,
        header.tx_hash,
        header.receipt_hash,
        header.bloom,
        header.difficulty or 0,
        header.number or 0,
        header.gas_limit,
        header.gas_used,
        header.time,
        header.extra[: len(header.extra) - SIGNATURE_LENGTH],
        header.mix_digest,
        header.nonce,
    ]
    if header.base_fee is not None:
        fields.append(header.base_fee)
    if header.withdrawals_hash is not None:
        if header.withdrawals_hash != EMPTY_WITHDRAWALS_HASH:
            raise InvalidHeaderError(
                f"withdrawalsHash ({header.withdrawals_hash.hex()}) should be EmptyWithdrawalsHash"
            )
        fields.append(header.withdrawals_hash)
    if header.excess_blob_gas is not None:
        if header.excess_blob_gas != 0:
            raise InvalidHeaderError(f"excessBlobGas ({header.excess_blob_gas}) should be 0")
        fields.append(header.excess_blob_gas)
    if header.blob_gas_used is not None:
        if header.blob_gas_used != 0:
            raise InvalidHeaderError(f"blobGasUsed ({header.blob_gas_used}) should be 0")
        fields.append(header.blob_gas_used)
    if header.parent_beacon_root is not None:
        if header.parent_beacon_root != MIN_HASH:
            raise InvalidHeaderError(
                f"parentBeaconRoot ({header.parent_beacon_root.hex()}) should be 0x0"
            )
        fields.append(header.parent_beacon_root)
    return fields


def clique_rlp(header: Header) -> bytes:
    """Return the RLP bytes that a signer signs: the header without its seal."""
    return rlp_encode(_sig_header_fields(header))


def seal_hash(header: Header) -> bytes:
    """Return the hash of a header prior to it being sealed."""
    return keccak256(clique_rlp(header))


def _point_add(a: _Point, b: _Point) -> _Point:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0]:
        if (a[1] + b[1]) % _P == 0:
            return None
        slope = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        slope = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (slope * slope - a[0] - b[0]) % _P
    y = (slope * (a[0] - x) - a[1]) % _P
    return (x, y)


def _point_mul(scalar: int, point: _Point) -> _Point:
    result: _Point = None
    addend = point
    while scalar:
        if scalar & 1:
            result = _point_add(result, addend)
        addend = _point_add(addend, addend)
        scalar >>= 1
    return result


def _scalar(private_key: PrivateKey) -> int:
    if isinstance(private_key, int):
        value = private_key
    else:
        data = bytes(private_key)
        if len(data) != 32:
            raise ValueError("private key must be 32 bytes")
        value = int.from_bytes(data, "big")
    if not 0 < value < _N:
        raise ValueError("private key out of range")
    return value


def _hmac(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def _rfc6979_nonces(secret: int, message_hash: bytes) -> Iterator[int]:
    secret_bytes = secret.to_bytes(32, "big")
    message = (int.from_bytes(message_hash, "big") % _N).to_bytes(32, "big")
    v = b"\x01" * 32
    k = b"\x00" * 32
    k = _hmac(k, v + b"\x00" + secret_bytes + message)
    v = _hmac(k, v)
    k = _hmac(k, v + b"\x01" + secret_bytes + message)
    v = _hmac(k, v)
    while True:
        v = _hmac(k, v)
        candidate = int.from_bytes(v, "big")
        if 0 < candidate < _N:
            yield candidate
        k = _hmac(k, v + b"\x00")
        v = _hmac(k, v)


def sign(message_hash: bytes, private_key: PrivateKey) -> bytes:
    """Sign a 32 byte hash, returning a 65 byte [R || S || V] signature with low S."""
    message_hash = bytes(message_hash)
    if len(message_hash) != 32:
        raise ValueError(f"hash is required to be exactly 32 bytes ({len(message_hash)})")
    secret = _scalar(private_key)
    z = int.from_bytes(message_hash, "big")
    for nonce in _rfc6979_nonces(secret, message_hash):
        point = _point_mul(nonce, _G)
        r = point[0] % _N
        if r == 0:
            continue
        s = pow(nonce, -1, _N) * (z + r * secret) % _N
        if s == 0:
            continue
        recovery_id = (point[1] & 1) | (2 if point[0] >= _N else 0)
        if s > _N // 2:
            s = _N - s
            recovery_id ^= 1
        return r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([recovery_id])
    raise AssertionError("nonce generator is infinite")


def _recover_public_key(message_hash: bytes, signature: bytes) -> bytes:
    if len(signature) != SIGNATURE_LENGTH:
        raise InvalidHeaderError("invalid signature length")
    recovery_id = signature[64]
    if recovery_id >= 4:
        raise InvalidHeaderError("invalid signature recovery id")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    if not (0 < r < _N and 0 < s < _N):
        raise InvalidHeaderError("invalid signature")
    x = r + (_N if recovery_id & 2 else 0)
    if x >= _P:
        raise InvalidHeaderError("invalid signature")
    alpha = (pow(x, 3, _P) + 7) % _P
    y = pow(alpha, (_P + 1) // 4, _P)
    if y * y % _P != alpha:
        raise InvalidHeaderError("invalid signature")
    if (y & 1) != (recovery_id & 1):
        y = _P - y
    z = int.from_bytes(message_hash, "big") % _N
    r_inverse = pow(r, -1, _N)
    public = _point_add(
        _point_mul(s * r_inverse % _N, (x, y)),
        _point_mul(-z * r_inverse % _N, _G),
    )
    if public is None:
        raise InvalidHeaderError("invalid signature")
    return b"\x04" + public[0].to_bytes(32, "big") + public[1].to_bytes(32, "big")


def private_key_to_address(private_key: PrivateKey) -> bytes:
    """Return the 20 byte account address belonging to a private key."""
    public = _point_mul(_scalar(private_key), _G)
    return keccak256(public[0].to_bytes(32, "big") + public[1].to_bytes(32, "big"))[12:]


def sign_header(header: Header, private_key: PrivateKey) -> Header:
    """Return a copy of the header with its seal written into the extra-data."""
    signature = sign(seal_hash(header), private_key)
    return replace(header, extra=header.extra[: len(header.extra) - EXTRA_SEAL] + signature)


def ecrecover(header: Header, cache: Optional[MutableMapping[bytes, bytes]]) -> bytes:
    """Return the address that sealed the header, consulting and filling ``cache``."""
    block_hash = header.hash()
    if cache is not None:
        try:
            return cache[block_hash]
        except KeyError:
            pass
    if len(header.extra) < EXTRA_SEAL:
        raise MissingSignatureError()
    signature = header.extra[len(header.extra) - EXTRA_SEAL:]
    public = _recover_public_key(seal_hash(header), signature)
    signer = keccak256(public[1:])[12:]
    if cache is not None:
        cache[block_hash] = signer
    return signer