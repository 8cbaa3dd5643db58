import time

import pytest

from eclique.chain_reader import ChainReader
from eclique.clique import Clique, calc_difficulty
from eclique.errors import (
    CliqueError,
    FutureBlockError,
    InvalidHeaderError,
    RecentlySignedError,
    UnauthorizedSignerError,
    UnknownAncestorError,
    UnknownBlockError,
)
from eclique.header import (
    DIFF_IN_TURN,
    DIFF_NO_TURN,
    EXTRA_SEAL,
    EXTRA_VANITY,
    NONCE_AUTH_VOTE,
    NONCE_DROP_VOTE,
    ZERO_ADDRESS,
    ZERO_HASH,
    Header,
    keccak256,
    private_key_to_address,
    sign,
    sign_header,
)
from eclique.snapshot import CLIQUE_SNAPSHOT_PREFIX, Snapshot
from eclique.verify import ChainConfig, CliqueConfig

GAS_LIMIT = 8_000_000
SIGNING_KEYS = [bytes([n]) * 32 for n in (1, 2, 3)]
KEY_BY_ADDRESS = {private_key_to_address(k): k for k in SIGNING_KEYS}
ALL_ADDRESSES = list(KEY_BY_ADDRESS)
SIGNERS = sorted(ALL_ADDRESSES[:2])
OUTSIDER = ALL_ADDRESSES[2]


def make_genesis(signers=SIGNERS):
    return Header(
        number=0,
        difficulty=1,
        gas_limit=GAS_LIMIT,
        time=0,
        extra=bytes(EXTRA_VANITY) + b"".join(sorted(signers)) + bytes(EXTRA_SEAL),
    )


def make_block(parent, signer, difficulty, sign_it=True, **fields):
    values = dict(
        parent_hash=parent.hash(),
        number=parent.number + 1,
        time=parent.time + 1,
        gas_limit=GAS_LIMIT,
        difficulty=difficulty,
        extra=bytes(EXTRA_VANITY + EXTRA_SEAL),
    )
    values.update(fields)
    header = Header(**values)
    return sign_header(header, KEY_BY_ADDRESS[signer]) if sign_it else header


def make_chain(*headers):
    chain = ChainReader(chain_config=ChainConfig())
    for header in headers:
        chain.put_header(header)
    return chain


@pytest.fixture
def genesis():
    return make_genesis()


@pytest.fixture
def clique():
    return Clique(CliqueConfig(period=1))


def test_author_recovers_sealer(genesis, clique):
    block = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    assert clique.author(block) == SIGNERS[1]


def test_verify_header_accepts_valid_block(genesis, clique):
    block = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    chain = make_chain(genesis, block)
    clique.verify_header(chain, block)
    snap = clique.snapshot(chain, 1, block.hash(), None)
    assert snap.recents == {1: SIGNERS[1]}
    assert snap.signers() == SIGNERS


def test_verify_header_unauthorized_signer(genesis, clique):
    block = make_block(genesis, OUTSIDER, DIFF_NO_TURN)
    with pytest.raises(UnauthorizedSignerError):
        clique.verify_header(make_chain(genesis), block)


def test_verify_header_wrong_difficulty(genesis, clique):
    block = make_block(genesis, SIGNERS[1], DIFF_NO_TURN)
    with pytest.raises(InvalidHeaderError, match="wrong difficulty"):
        clique.verify_header(make_chain(genesis), block)


def test_fake_diff_skips_difficulty_check(genesis):
    engine = Clique(CliqueConfig(period=1), fake_diff=True)
    block = make_block(genesis, SIGNERS[1], DIFF_NO_TURN)
    chain = make_chain(genesis, block)
    engine.verify_header(chain, block)
    assert engine.snapshot(chain, 1, block.hash(), None).recents[1] == SIGNERS[1]


def test_verify_header_recently_signed(genesis, clique):
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    second = make_block(first, SIGNERS[1], DIFF_NO_TURN)
    with pytest.raises(RecentlySignedError):
        clique.verify_header(make_chain(genesis, first), second)


def test_verify_header_unknown_ancestor(genesis, clique):
    block = make_block(genesis, SIGNERS[1], DIFF_IN_TURN, parent_hash=b"\x01" * 32)
    with pytest.raises(UnknownAncestorError):
        clique.verify_header(make_chain(genesis), block)


def test_verify_header_future_block(genesis, clique):
    block = make_block(genesis, SIGNERS[1], DIFF_IN_TURN, time=int(time.time()) + 100000)
    with pytest.raises(FutureBlockError):
        clique.verify_header(make_chain(genesis), block)


def test_verify_headers_batch_with_vote(genesis, clique):
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN, coinbase=OUTSIDER, nonce=NONCE_AUTH_VOTE)
    second = make_block(first, SIGNERS[0], DIFF_IN_TURN, coinbase=OUTSIDER, nonce=NONCE_AUTH_VOTE)
    chain = make_chain(genesis)
    assert list(clique.verify_headers(chain, [first, second])) == [None, None]
    snap = clique.snapshot(chain, 2, second.hash(), [first, second])
    assert snap.signers() == sorted(SIGNERS + [OUTSIDER])
    assert snap.tally == {}


def test_verify_headers_reports_error_in_order(genesis, clique):
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    second = make_block(first, OUTSIDER, DIFF_IN_TURN)
    results = list(clique.verify_headers(make_chain(genesis), [first, second]))
    assert results[0] is None
    assert isinstance(results[1], UnauthorizedSignerError)


def test_checkpoint_signer_list_mismatch(genesis):
    engine = Clique(CliqueConfig(period=1, epoch=2))
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    extra = bytes(EXTRA_VANITY) + SIGNERS[0] + bytes(EXTRA_SEAL)
    second = make_block(first, SIGNERS[0], DIFF_IN_TURN, extra=extra)
    with pytest.raises(InvalidHeaderError, match="mismatching signer list"):
        engine.verify_header(make_chain(genesis, first), second)


def test_verify_uncles_rejects_uncles(genesis, clique):
    with pytest.raises(CliqueError, match="uncles not allowed"):
        clique.verify_uncles([genesis])


def test_genesis_snapshot_stored_and_cached(genesis, clique):
    chain = make_chain(genesis)
    snap = clique.snapshot(chain, 0, genesis.hash(), None)
    assert snap.signers() == SIGNERS
    assert CLIQUE_SNAPSHOT_PREFIX + genesis.hash() in clique.db
    assert clique.snapshot(chain, 0, genesis.hash(), None) is snap


def test_snapshot_loaded_from_database(genesis, clique):
    clique.snapshot(make_chain(genesis), 0, genesis.hash(), None)
    fresh = Clique(CliqueConfig(period=1), clique.db)
    snap = fresh.snapshot(make_chain(), 0, genesis.hash(), None)
    assert snap.signers() == SIGNERS
    assert snap.hash == genesis.hash()


def test_snapshot_unknown_ancestor(clique):
    with pytest.raises(UnknownAncestorError):
        clique.snapshot(make_chain(), 0, ZERO_HASH, None)


def test_calc_difficulty_function():
    snap = Snapshot(config=CliqueConfig(), sigcache=None, number=0, hash=ZERO_HASH,
                    signer_set=set(SIGNERS))
    assert calc_difficulty(snap, SIGNERS[1]) == DIFF_IN_TURN
    assert calc_difficulty(snap, SIGNERS[0]) == DIFF_NO_TURN


def test_engine_calc_difficulty(genesis, clique):
    chain = make_chain(genesis)
    clique.authorize(SIGNERS[1])
    assert clique.calc_difficulty(chain, 5, genesis) == DIFF_IN_TURN
    orphan = Header(number=5, parent_hash=b"\x02" * 32)
    assert clique.calc_difficulty(make_chain(), 5, orphan) is None


def test_proposals_round_trip(clique):
    clique.propose(OUTSIDER, True)
    clique.propose(SIGNERS[0], False)
    assert clique.proposals() == {OUTSIDER: True, SIGNERS[0]: False}
    clique.discard(OUTSIDER)
    assert clique.proposals() == {SIGNERS[0]: False}


def test_prepare_casts_vote(genesis, clique):
    chain = make_chain(genesis)
    clique.authorize(SIGNERS[1])
    clique.propose(OUTSIDER, True)
    header = Header(parent_hash=genesis.hash(), number=1, extra=b"vanity")
    clique.prepare(chain, header)
    assert header.coinbase == OUTSIDER
    assert header.nonce == NONCE_AUTH_VOTE
    assert header.difficulty == DIFF_IN_TURN
    assert header.extra == b"vanity".ljust(EXTRA_VANITY, b"\x00") + bytes(EXTRA_SEAL)
    assert header.time >= genesis.time + 1


def test_prepare_ignores_meaningless_proposal(genesis, clique):
    chain = make_chain(genesis)
    clique.authorize(SIGNERS[0])
    clique.propose(SIGNERS[1], True)
    header = Header(parent_hash=genesis.hash(), number=1)
    clique.prepare(chain, header)
    assert header.coinbase == ZERO_ADDRESS
    assert header.nonce == NONCE_DROP_VOTE
    assert header.difficulty == DIFF_NO_TURN


def test_prepare_checkpoint_lists_signers(genesis):
    engine = Clique(CliqueConfig(period=1, epoch=2))
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    header = Header(parent_hash=first.hash(), number=2)
    engine.prepare(make_chain(genesis, first), header)
    assert header.extra[EXTRA_VANITY:-EXTRA_SEAL] == b"".join(SIGNERS)
    assert len(header.extra) == EXTRA_VANITY + 2 * 20 + EXTRA_SEAL


def _signer_fn(address):
    key = KEY_BY_ADDRESS[address]
    return lambda signer, mime_type, data: sign(keccak256(data), key)


def _cancun_block(parent, difficulty):
    return make_block(parent, SIGNERS[1], difficulty, sign_it=False,
                      blob_gas_used=0, excess_blob_gas=0, parent_beacon_root=ZERO_HASH)


def test_seal_signs_header(genesis, clique):
    clique.authorize_with_signer(SIGNERS[1], _signer_fn(SIGNERS[1]))
    header = _cancun_block(genesis, DIFF_IN_TURN)
    sealed, delay = clique.seal(make_chain(genesis), header, 0)
    assert clique.author(sealed) == SIGNERS[1]
    assert sealed.extra[:-EXTRA_SEAL] == header.extra[:-EXTRA_SEAL]
    assert clique.seal_hash(sealed) == clique.seal_hash(header)
    assert delay <= 1


def test_seal_rejects_unauthorized(genesis, clique):
    clique.authorize_with_signer(OUTSIDER, _signer_fn(OUTSIDER))
    with pytest.raises(UnauthorizedSignerError):
        clique.seal(make_chain(genesis), _cancun_block(genesis, DIFF_IN_TURN), 1)


def test_seal_rejects_recent_signer(genesis, clique):
    first = make_block(genesis, SIGNERS[1], DIFF_IN_TURN)
    clique.authorize_with_signer(SIGNERS[1], _signer_fn(SIGNERS[1]))
    header = _cancun_block(first, DIFF_NO_TURN)
    with pytest.raises(CliqueError, match="signed recently"):
        clique.seal(make_chain(genesis, first), header, 1)


def test_seal_genesis_and_empty_zero_period(genesis):
    engine = Clique(CliqueConfig(period=0))
    with pytest.raises(UnknownBlockError):
        engine.seal(make_chain(genesis), genesis, 1)
    with pytest.raises(CliqueError, match="sealing paused"):
        engine.seal(make_chain(genesis), _cancun_block(genesis, DIFF_IN_TURN), 0)