"""Authorization voting state of the clique engine at a given block."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .errors import (
    InvalidVoteError,
    InvalidVotingChainError,
    RecentlySignedError,
    UnauthorizedSignerError,
)
from .header import NONCE_AUTH_VOTE, NONCE_DROP_VOTE, Header, ecrecover

logger = logging.getLogger(__name__)

CLIQUE_SNAPSHOT_PREFIX = b"clique-"
_PROGRESS_INTERVAL = 8.0


@dataclass(frozen=True)
class Vote:
    """A single vote an authorized signer cast to change the signer list."""

    signer: bytes
    block: int
    address: bytes
    authorize: bool


@dataclass(frozen=True)
class Tally:
    """Running count of the votes in favour of one proposal."""

    authorize: bool
    votes: int


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def _unhex(text: str) -> bytes:
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


@dataclass(eq=False)
class Snapshot:
    """The state of the authorization voting at a given point in time.

    ``signer_set`` holds the authorized signers, ``recents`` maps block
    numbers to the signer of that block, ``votes`` lists the votes in
    chronological order and ``tally`` keeps the running score per address.
    """

    config: Any = field(repr=False)
    sigcache: Optional[MutableMapping[bytes, bytes]] = field(repr=False)
    number: int
    hash: bytes
    signer_set: set[bytes] = field(default_factory=set)
    recents: dict[int, bytes] = field(default_factory=dict)
    votes: list[Vote] = field(default_factory=list)
    tally: dict[bytes, Tally] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.hash = bytes(self.hash)
        self.signer_set = {bytes(signer) for signer in self.signer_set}

    def store(self, db: MutableMapping[bytes, bytes]) -> None:
        """Write the snapshot into ``db`` under the key of its block hash."""
        db[CLIQUE_SNAPSHOT_PREFIX + self.hash] = self.to_json().encode()

    def copy(self) -> Snapshot:
        """Return a copy whose containers can be changed independently."""
        return Snapshot(
            config=self.config,
            sigcache=self.sigcache,
            number=self.number,
            hash=self.hash,
            signer_set=set(self.signer_set),
            recents=dict(self.recents),
            votes=list(self.votes),
            tally=dict(self.tally),
        )

    def valid_vote(self, address: bytes, authorize: bool) -> bool:
        """Tell whether voting on ``address`` would change anything."""
        return (address in self.signer_set) != bool(authorize)

    def cast(self, address: bytes, authorize: bool) -> bool:
        """Add a vote to the tally; return False if the vote is meaningless."""
        if not self.valid_vote(address, authorize):
            return False
        old = self.tally.get(address)
        if old is None:
            self.tally[address] = Tally(authorize=authorize, votes=1)
        else:
            self.tally[address] = replace(old, votes=old.votes + 1)
        return True

    def uncast(self, address: bytes, authorize: bool) -> bool:
        """Remove a previously cast vote from the tally."""
        tally = self.tally.get(address)
        if tally is None or tally.authorize != authorize:
            return False
        if tally.votes > 1:
            self.tally[address] = replace(tally, votes=tally.votes - 1)
        else:
            del self.tally[address]
        return True

    def apply(self, headers: Iterable[Header]) -> Snapshot:
        """Return a new snapshot with the given consecutive headers applied."""
        headers = list(headers)
        if not headers:
            return self
        for previous, following in zip(headers, headers[1:]):
            if following.number != previous.number + 1:
                raise InvalidVotingChainError()
        if headers[0].number != self.number + 1:
            raise InvalidVotingChainError()

        snap = self.copy()
        start = logged = time.monotonic()
        for processed, header in enumerate(headers):
            number = header.number
            if number % self.config.epoch == 0:
                snap.votes = []
                snap.tally = {}
            # Let the oldest recent signer sign again
            limit = len(snap.signer_set) // 2 + 1
            if number >= limit:
                snap.recents.pop(number - limit, None)

            signer = ecrecover(header, self.sigcache)
            if signer not in snap.signer_set:
                raise UnauthorizedSignerError()
            if signer in snap.recents.values():
                raise RecentlySignedError()
            snap.recents[number] = signer

            coinbase = header.coinbase
            for index, vote in enumerate(snap.votes):
                if vote.signer == signer and vote.address == coinbase:
                    snap.uncast(vote.address, vote.authorize)
                    del snap.votes[index]
                    break

            if header.nonce == NONCE_AUTH_VOTE:
                authorize = True
            elif header.nonce == NONCE_DROP_VOTE:
                authorize = False
            else:
                raise InvalidVoteError()
            if snap.cast(coinbase, authorize):
                snap.votes.append(
                    Vote(signer=signer, block=number, address=coinbase, authorize=authorize)
                )

            tally = snap.tally.get(coinbase)
            if tally is not None and tally.votes > len(snap.signer_set) // 2:
                if tally.authorize:
                    snap.signer_set.add(coinbase)
                else:
                    snap.signer_set.discard(coinbase)
                    limit = len(snap.signer_set) // 2 + 1
                    if number >= limit:
                        snap.recents.pop(number - limit, None)
                    kept = []
                    for vote in snap.votes:
                        if vote.signer == coinbase:
                            snap.uncast(vote.address, vote.authorize)
                        else:
                            kept.append(vote)
                    snap.votes = kept
                snap.votes = [vote for vote in snap.votes if vote.address != coinbase]
                snap.tally.pop(coinbase, None)

            if time.monotonic() - logged > _PROGRESS_INTERVAL:
                logger.info(
                    "Reconstructing voting history: processed %d of %d, elapsed %.1fs",
                    processed,
                    len(headers),
                    time.monotonic() - start,
                )
                logged = time.monotonic()
        elapsed = time.monotonic() - start
        if elapsed > _PROGRESS_INTERVAL:
            logger.info(
                "Reconstructed voting history: processed %d, elapsed %.1fs", len(headers), elapsed
            )
        snap.number += len(headers)
        snap.hash = headers[-1].hash()
        return snap

    def signers(self) -> list[bytes]:
        """Return the authorized signers in ascending order."""
        return sorted(self.signer_set)

    def inturn(self, number: int, signer: bytes) -> bool:
        """Tell whether ``signer`` is in turn to sign block ``number``."""
        signers = self.signers()
        offset = signers.index(signer) if signer in self.signer_set else len(signers)
        return number % len(signers) == offset

    def to_json(self) -> str:
        """Serialize the persistent fields of the snapshot to JSON."""
        document = {
            "number": self.number,
            "hash": _hex(self.hash),
            "signers": {_hex(signer): {} for signer in self.signers()},
            "recents": {
                str(number): _hex(self.recents[number])
                for number in sorted(self.recents, key=str)
            },
            "votes": [
                {
                    "signer": _hex(vote.signer),
                    "block": vote.block,
                    "address": _hex(vote.address),
                    "authorize": vote.authorize,
                }
                for vote in self.votes
            ],
            "tally": {
                _hex(address): {"authorize": tally.authorize, "votes": tally.votes}
                for address, tally in sorted(self.tally.items())
            },
        }
        return json.dumps(document, separators=(",", ":"))


def _snapshot_from_json(config: Any, sigcache, blob: bytes | str) -> Snapshot:
    try:
        document = json.loads(blob)
        return Snapshot(
            config=config,
            sigcache=sigcache,
            number=int(document["number"]),
            hash=_unhex(document["hash"]),
            signer_set={_unhex(signer) for signer in document.get("signers") or {}},
            recents={
                int(number): _unhex(address)
                for number, address in (document.get("recents") or {}).items()
            },
            votes=[
                Vote(
                    signer=_unhex(vote["signer"]),
                    block=int(vote["block"]),
                    address=_unhex(vote["address"]),
                    authorize=bool(vote["authorize"]),
                )
                for vote in document.get("votes") or []
            ],
            tally={
                _unhex(address): Tally(authorize=bool(entry["authorize"]), votes=int(entry["votes"]))
                for address, entry in (document.get("tally") or {}).items()
            },
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"malformed snapshot: {exc}") from exc


def load_snapshot(
    config: Any,
    sigcache: Optional[MutableMapping[bytes, bytes]],
    db: MutableMapping[bytes, bytes],
    block_hash: bytes,
) -> Snapshot:
    """Load the snapshot stored for ``block_hash``; raise KeyError if absent."""
    blob = db[CLIQUE_SNAPSHOT_PREFIX + bytes(block_hash)]
    return _snapshot_from_json(config, sigcache, blob)