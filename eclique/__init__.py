"""Proof-of-authority consensus engine: headers, vote snapshots, verification and sealing."""

__version__ = "0.1.0"