# eclique

A proof-of-authority consensus engine in the Clique style. A fixed set of
authorized signers take turns sealing blocks; signers vote other accounts in
or out through the header's coinbase and nonce fields, and the engine keeps a
running snapshot of who may sign.

## Install

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `eclique.header`: the `Header` dataclass (with `hash()` and `copy()`),
  `rlp_encode`, `keccak256`, the seal hash (`seal_hash`, `clique_rlp`),
  secp256k1 signing (`sign`, `sign_header`, `private_key_to_address`) and
  signer recovery (`ecrecover`, which can fill a mapping used as a cache).
  Signatures are 65 bytes `[R || S || V]` with low S and deterministic
  nonces.
- `eclique.snapshot`: `Snapshot`, `Vote` and `Tally`. A snapshot records the
  authorized signers (`signer_set`, sorted by `signers()`), the recent
  signers, the votes in flight and their tally. `Snapshot.apply` walks it
  forward over a run of consecutive headers; `Snapshot.inturn` tells whose
  turn a block is. Snapshots serialize to JSON (`to_json`) and are stored to
  and loaded from any mutable mapping of bytes to bytes (`Snapshot.store`,
  `load_snapshot`).
- `eclique.chain_reader`: `ChainReader`, an in-memory window of the most
  recent headers (10 by default) that the engine reads the chain through.
  Its `chain_config` must be set for header verification.
- `eclique.verify`: `CliqueConfig` (block `period`, `epoch` defaulting to
  30000), `ChainConfig` (London block and Cancun time) and the checks that
  need no snapshot: `verify_standalone_fields`, `verify_parent_fields`,
  `verify_gas_limit`, `verify_eip1559_header` and
  `enforce_cancun_header_invariants`.
- `eclique.clique`: the `Clique` engine: `verify_header`, `verify_headers`
  (a generator yielding `None` or the error per header), `verify_uncles`,
  `snapshot` reconstruction with an LRU of recent snapshots and checkpoint
  storage every 1024 blocks, `prepare`, `calc_difficulty`, `seal`, `author`,
  `seal_hash`, and the proposal book (`propose`, `discard`, `proposals`).
- `eclique.api`: `CliqueAPI`, the query interface: `get_snapshot`,
  `get_snapshot_at_hash`, `get_signers`, `get_signers_at_hash`, proposals,
  `status()` returning a `Status` over the last 64 blocks, and `get_signer`,
  which accepts a block number, a block tag, a hash, or the RLP of a block or
  header.
- `eclique.errors`: `CliqueError` and its subclasses, one for each way a
  header can be rejected, and `describe` for an error's text.

## Example

```python
from eclique.chain_reader import ChainReader
from eclique.clique import Clique
from eclique.header import keccak256, sign
from eclique.verify import ChainConfig, CliqueConfig

reader = ChainReader(chain_config=ChainConfig(london_block=0, cancun_time=0))
reader.put_header(genesis_header)

engine = Clique(CliqueConfig(period=2), db={})
engine.authorize_with_signer(
    my_address,
    lambda signer, mimetype, data: sign(keccak256(data), signer_key),
)

snap = engine.snapshot(reader, 0, genesis_header.hash(), None)
print(snap.signers())
```

Difficulty is 2 for a signer that is in turn for the block number and 1
otherwise. Checkpoint blocks, every `epoch` blocks, reset all pending votes
and carry the full signer list in their extra data.

`Clique.seal` returns the sealed copy of the header together with the delay,
in seconds, to wait before it should be propagated; it requires a zero
parent beacon root and zero blob gas fields.

## What it does not do

The package holds the consensus rules only. It does not talk to an
execution client, run a block-production loop, broadcast blocks, read
keystore files, or keep a chain database on disk: storage is whatever
mutable mapping is handed to `Clique`, and the chain view is the in-memory
`ChainReader`. There is no command-line program.