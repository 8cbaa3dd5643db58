"""A small in-memory window of recent headers used as the chain view."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .header import Header


@dataclass
class ChainReader:
    """Keeps the most recent ``capacity`` headers, indexed by block number."""

    headers: dict[int, Header] = field(default_factory=dict)
    chain_config: Any = None
    capacity: int = 10

    def config(self) -> Any:
        """Return the chain configuration."""
        if self.chain_config is None:
            raise LookupError("chain configuration not set")
        return self.chain_config

    def current_header(self) -> Optional[Header]:
        """Return the header with the highest number, or None when empty."""
        if not self.headers:
            return None
        return self.headers[max(self.headers)]

    def get_header(self, block_hash: bytes, number: int) -> Optional[Header]:
        """Return the header stored at ``number``; the hash is not consulted."""
        return self.headers.get(number)

    def get_header_by_number(self, number: int) -> Optional[Header]:
        """Return the header stored at ``number``, or None."""
        return self.headers.get(number)

    def get_header_by_hash(self, block_hash: bytes) -> Optional[Header]:
        """Return the stored header with the given hash, or None."""
        block_hash = bytes(block_hash)
        return next(
            (header for header in self.headers.values() if header.hash() == block_hash),
            None,
        )

    def put_header(self, header: Header) -> None:
        """Store a header, dropping the one ``capacity`` blocks older when full."""
        if len(self.headers) >= self.capacity:
            self.headers.pop(header.number - self.capacity, None)
        self.headers[header.number] = header