"""The clique proof-of-authority consensus engine."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Iterator, MutableMapping
from dataclasses import replace
from typing import Any, Optional

from cachetools import LRUCache

from .errors import (
    CliqueError,
    UnauthorizedSignerError,
    UnknownAncestorError,
    UnknownBlockError,
)
from .header import (
    ADDRESS_LENGTH,
    DIFF_IN_TURN,
    DIFF_NO_TURN,
    EXTRA_SEAL,
    EXTRA_VANITY,
    NONCE_AUTH_VOTE,
    NONCE_DROP_VOTE,
    ZERO_ADDRESS,
    ZERO_HASH,
    Header,
    clique_rlp,
    ecrecover,
    seal_hash,
)
from .errors import InvalidHeaderError
from .snapshot import Snapshot, load_snapshot
from .verify import (
    CliqueConfig,
    enforce_cancun_header_invariants,
    verify_parent_fields,
    verify_standalone_fields,
)

logger = logging.getLogger(__name__)

CHECKPOINT_INTERVAL = 1024  # blocks after which the vote snapshot is saved to the database
INMEMORY_SNAPSHOTS = 128
INMEMORY_SIGNATURES = 4096
WIGGLE_TIME = 0.5  # seconds of random delay per signer for out-of-turn sealing
FULL_IMMUTABILITY_THRESHOLD = 90000
MIMETYPE_CLIQUE = "application/x-clique-header"

SignerFn = Callable[[bytes, str, bytes], bytes]


def calc_difficulty(snap: Snapshot, signer: bytes) -> int:
    """Return the difficulty the next block on top of ``snap`` has when sealed by ``signer``."""
    if snap.inturn(snap.number + 1, signer):
        return DIFF_IN_TURN
    return DIFF_NO_TURN


class Clique:
    """Proof-of-authority engine: verifies, prepares and seals headers."""

    def __init__(
        self,
        config: CliqueConfig,
        db: Optional[MutableMapping[bytes, bytes]] = None,
        *,
        fake_diff: bool = False,
    ) -> None:
        self.config = replace(config)
        self.db: MutableMapping[bytes, bytes] = {} if db is None else db
        self.recents: LRUCache = LRUCache(maxsize=INMEMORY_SNAPSHOTS)
        self.signatures: LRUCache = LRUCache(maxsize=INMEMORY_SIGNATURES)
        self.fake_diff = fake_diff
        self._proposals: dict[bytes, bool] = {}
        self._signer: bytes = ZERO_ADDRESS
        self._sign_fn: Optional[SignerFn] = None
        self._lock = threading.RLock()

    # -- signer and proposals -------------------------------------------------

    def authorize(self, signer: bytes) -> None:
        """Set the address this engine seals blocks as."""
        with self._lock:
            self._signer = bytes(signer)

    def authorize_with_signer(self, signer: bytes, sign_fn: SignerFn) -> None:
        """Set the sealing address and the function that signs for it."""
        with self._lock:
            self._signer = bytes(signer)
            self._sign_fn = sign_fn

    def propose(self, address: bytes, authorize: bool) -> None:
        """Add a proposal to authorize or drop ``address``."""
        with self._lock:
            self._proposals[bytes(address)] = bool(authorize)

    def discard(self, address: bytes) -> None:
        """Drop the running proposal on ``address``, if any."""
        with self._lock:
            self._proposals.pop(bytes(address), None)

    def proposals(self) -> dict[bytes, bool]:
        """Return a copy of the running proposals."""
        with self._lock:
            return dict(self._proposals)

    # -- verification ---------------------------------------------------------

    def author(self, header: Header) -> bytes:
        """Return the address that sealed ``header``."""
        return ecrecover(header, self.signatures)

    def seal_hash(self, header: Header) -> bytes:
        """Return the hash of the header prior to sealing."""
        return seal_hash(header)

    def verify_header(self, chain: Any, header: Header) -> None:
        """Raise if ``header`` breaks a consensus rule."""
        self._verify_header(chain, header, [])

    def verify_headers(
        self, chain: Any, headers: Iterable[Header]
    ) -> Iterator[Optional[CliqueError]]:
        """Verify a batch in order, yielding None or the error for each header.

        Each header may use the earlier ones of the batch as its ancestors.
        Stop iterating to abort the remaining checks.
        """
        batch = list(headers)
        for index, header in enumerate(batch):
            try:
                self._verify_header(chain, header, batch[:index])
            except CliqueError as exc:
                yield exc
            else:
                yield None

    def verify_uncles(self, uncles: Iterable[Header]) -> None:
        """Raise because proof-of-authority blocks may not carry uncles."""
        if list(uncles):
            raise CliqueError("uncles not allowed")

    def _verify_header(self, chain: Any, header: Header, parents: list[Header]) -> None:
        chain_config = chain.config()
        verify_standalone_fields(header, self.config, chain_config, None)
        number = header.number
        if number == 0:
            return
        parent = parents[-1] if parents else chain.get_header(header.parent_hash, number - 1)
        verify_parent_fields(header, parent, self.config, chain_config)

        snap = self.snapshot(chain, number - 1, header.parent_hash, parents)
        if number % self.config.epoch == 0:
            expected = b"".join(snap.signers())
            if header.extra[EXTRA_VANITY: len(header.extra) - EXTRA_SEAL] != expected:
                raise InvalidHeaderError("mismatching signer list on checkpoint block")
        self._verify_seal(snap, header)

    def _verify_seal(self, snap: Snapshot, header: Header) -> None:
        number = header.number
        if number == 0:
            raise UnknownBlockError()
        signer = ecrecover(header, self.signatures)
        if signer not in snap.signer_set:
            raise UnauthorizedSignerError()
        limit = len(snap.signer_set) // 2 + 1
        for seen, recent in snap.recents.items():
            # A signer among the recents may sign only once it is shifted out.
            if recent == signer and number >= limit and seen > number - limit:
                from .errors import RecentlySignedError

                raise RecentlySignedError()
        if not self.fake_diff:
            inturn = snap.inturn(number, signer)
            if inturn and header.difficulty != DIFF_IN_TURN:
                raise InvalidHeaderError("wrong difficulty")
            if not inturn and header.difficulty != DIFF_NO_TURN:
                raise InvalidHeaderError("wrong difficulty")

    # -- snapshots ------------------------------------------------------------

    def snapshot(
        self,
        chain: Any,
        number: int,
        block_hash: bytes,
        parents: Optional[Iterable[Header]],
    ) -> Snapshot:
        """Return the authorization snapshot at block ``number`` with ``block_hash``."""
        pending = list(parents or [])
        block_hash = bytes(block_hash)
        headers: list[Header] = []
        snap: Optional[Snapshot] = None
        while snap is None:
            cached = self.recents.get(block_hash)
            if cached is not None:
                snap = cached
                break
            if number % CHECKPOINT_INTERVAL == 0:
                try:
                    snap = load_snapshot(self.config, self.signatures, self.db, block_hash)
                except (KeyError, ValueError):
                    pass
                else:
                    logger.debug("Loaded voting snapshot from disk: number %d", number)
                    break
            if number == 0 or (
                number % self.config.epoch == 0
                and (
                    len(headers) > FULL_IMMUTABILITY_THRESHOLD
                    or chain.get_header_by_number(number - 1) is None
                )
            ):
                checkpoint = chain.get_header_by_number(number)
                if checkpoint is not None:
                    checkpoint_hash = checkpoint.hash()
                    body = checkpoint.extra[EXTRA_VANITY:]
                    count = max(len(checkpoint.extra) - EXTRA_VANITY - EXTRA_SEAL, 0) // ADDRESS_LENGTH
                    signers = {
                        body[offset: offset + ADDRESS_LENGTH]
                        for offset in range(0, count * ADDRESS_LENGTH, ADDRESS_LENGTH)
                    }
                    snap = Snapshot(
                        config=self.config,
                        sigcache=self.signatures,
                        number=number,
                        hash=checkpoint_hash,
                        signer_set=signers,
                    )
                    snap.store(self.db)
                    logger.info("Stored checkpoint snapshot to disk: number %d", number)
                    break
            if pending:
                header = pending.pop()
                if header.hash() != block_hash or header.number != number:
                    raise UnknownAncestorError()
            else:
                header = chain.get_header(block_hash, number)
                if header is None:
                    raise UnknownAncestorError()
            headers.append(header)
            number, block_hash = number - 1, header.parent_hash

        headers.reverse()
        snap = snap.apply(headers)
        self.recents[snap.hash] = snap
        if snap.number % CHECKPOINT_INTERVAL == 0 and headers:
            snap.store(self.db)
            logger.debug("Stored voting snapshot to disk: number %d", snap.number)
        return snap

    # -- block production -----------------------------------------------------

    def prepare(self, chain: Any, header: Header) -> None:
        """Fill in the consensus fields of ``header`` in place."""
        header.coinbase = ZERO_ADDRESS
        header.nonce = NONCE_DROP_VOTE
        number = header.number
        snap = self.snapshot(chain, number - 1, header.parent_hash, None)
        with self._lock:
            if number % self.config.epoch != 0:
                candidates = [
                    address
                    for address, authorize in self._proposals.items()
                    if snap.valid_vote(address, authorize)
                ]
                if candidates:
                    header.coinbase = random.choice(candidates)
                    header.nonce = (
                        NONCE_AUTH_VOTE if self._proposals[header.coinbase] else NONCE_DROP_VOTE
                    )
            signer = self._signer

        header.difficulty = calc_difficulty(snap, signer)
        extra = header.extra.ljust(EXTRA_VANITY, b"\x00")[:EXTRA_VANITY]
        if number % self.config.epoch == 0:
            extra += b"".join(snap.signers())
        header.extra = extra + bytes(EXTRA_SEAL)
        header.mix_digest = ZERO_HASH

        parent = chain.get_header(header.parent_hash, number - 1)
        if parent is None:
            raise UnknownAncestorError()
        header.time = max(parent.time + self.config.period, int(time.time()))

    def calc_difficulty(self, chain: Any, time: int, parent: Header) -> Optional[int]:
        """Return the difficulty of the block after ``parent``, or None if unknown."""
        try:
            snap = self.snapshot(chain, parent.number, parent.hash(), None)
        except CliqueError:
            return None
        with self._lock:
            signer = self._signer
        return calc_difficulty(snap, signer)

    def seal(self, chain: Any, header: Header, transaction_count: int) -> tuple[Header, float]:
        """Sign ``header`` with the authorized signer.

        Returns the sealed copy of the header and the delay in seconds to
        wait before it should be propagated.
        """
        number = header.number
        if number == 0:
            raise UnknownBlockError()
        if self.config.period == 0 and transaction_count == 0:
            raise CliqueError("sealing paused while waiting for transactions")
        with self._lock:
            signer, sign_fn = self._signer, self._sign_fn

        snap = self.snapshot(chain, number - 1, header.parent_hash, None)
        if signer not in snap.signer_set:
            raise UnauthorizedSignerError()
        limit = len(snap.signer_set) // 2 + 1
        for seen, recent in snap.recents.items():
            if recent == signer and (number < limit or seen > number - limit):
                raise CliqueError("signed recently, must wait for others")

        delay = header.time - time.time()
        if header.difficulty == DIFF_NO_TURN:
            wiggle = limit * WIGGLE_TIME
            delay += random.uniform(0, wiggle)
            logger.debug("Out-of-turn signing requested: wiggle %.2fs", wiggle)

        try:
            enforce_cancun_header_invariants(header)
        except CliqueError:
            logger.error("Failed to seal block due to failed header invariants")
            raise
        if sign_fn is None:
            raise CliqueError("no signing function authorized")
        signature = bytes(sign_fn(signer, MIMETYPE_CLIQUE, clique_rlp(header)))

        old_seal = header.extra[len(header.extra) - EXTRA_SEAL:]
        new_seal = signature[:EXTRA_SEAL] + old_seal[len(signature[:EXTRA_SEAL]):]
        sealed = header.copy()
        sealed.extra = header.extra[: len(header.extra) - EXTRA_SEAL] + new_seal
        logger.info("Sealed new block %d", number)
        return sealed, delay