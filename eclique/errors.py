"""Errors raised while verifying and sealing clique headers."""

from __future__ import annotations


class CliqueError(Exception):
    """Base class for every consensus error of the clique engine."""

    default_message = "clique error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class UnknownBlockError(CliqueError):
    """The requested block is not part of the local chain."""

    default_message = "unknown block"


class UnknownAncestorError(CliqueError):
    """An ancestor of the block could not be found."""

    default_message = "unknown ancestor"


class FutureBlockError(CliqueError):
    """The block carries a timestamp in the future."""

    default_message = "block in the future"


class InvalidVoteError(CliqueError):
    """The nonce is neither the authorize nor the drop vote."""

    default_message = "vote nonce not 0x00..0 or 0xff..f"


class InvalidVotingChainError(CliqueError):
    """Headers applied to a snapshot are out of range or not contiguous."""

    default_message = "invalid voting chain"


class UnauthorizedSignerError(CliqueError):
    """The header is signed by an account that is not an authorized signer."""

    default_message = "unauthorized signer"


class RecentlySignedError(CliqueError):
    """The signer already signed one of the recent blocks."""

    default_message = "recently signed"


class MissingSignatureError(CliqueError):
    """The extra-data does not end with a 65 byte signature."""

    default_message = "extra-data 65 byte signature suffix missing"


class InvalidHeaderError(CliqueError):
    """A header field breaks a consensus rule."""

    default_message = "invalid header"


def describe(error: BaseException) -> str:
    """Return the human readable text of an error."""
    text = str(error)
    return text if text else type(error).__name__