import pytest

from eclique.errors import (
    CliqueError,
    FutureBlockError,
    InvalidHeaderError,
    InvalidVoteError,
    InvalidVotingChainError,
    MissingSignatureError,
    RecentlySignedError,
    UnauthorizedSignerError,
    UnknownAncestorError,
    UnknownBlockError,
    describe,
)


@pytest.mark.parametrize(
    "error_class, text",
    [
        (UnknownBlockError, "unknown block"),
        (InvalidVoteError, "vote nonce not 0x00..0 or 0xff..f"),
        (InvalidVotingChainError, "invalid voting chain"),
        (UnauthorizedSignerError, "unauthorized signer"),
        (RecentlySignedError, "recently signed"),
        (MissingSignatureError, "extra-data 65 byte signature suffix missing"),
    ],
)
def test_default_messages(error_class, text):
    assert describe(error_class()) == text
    assert str(error_class()) == text


@pytest.mark.parametrize(
    "error_class",
    [
        UnknownBlockError,
        UnknownAncestorError,
        FutureBlockError,
        InvalidVoteError,
        InvalidVotingChainError,
        UnauthorizedSignerError,
        RecentlySignedError,
        MissingSignatureError,
        InvalidHeaderError,
    ],
)
def test_all_errors_are_clique_errors(error_class):
    with pytest.raises(CliqueError) as info:
        raise error_class()
    assert isinstance(info.value, error_class)
    assert describe(info.value) == error_class.default_message


def test_custom_message_overrides_default():
    error = InvalidHeaderError("invalid difficulty")
    assert describe(error) == "invalid difficulty"
    assert error.args == ("invalid difficulty",)


def test_describe_foreign_exception_with_text():
    assert describe(ValueError("missing block 5")) == "missing block 5"


def test_describe_foreign_exception_without_text():
    assert describe(RuntimeError()) == "RuntimeError"


def test_specific_errors_are_distinct():
    recent = RecentlySignedError()
    unauthorized = UnauthorizedSignerError()
    assert describe(recent) == "recently signed"
    assert describe(unauthorized) == "unauthorized signer"
    assert not isinstance(recent, UnauthorizedSignerError)
    assert not isinstance(unauthorized, RecentlySignedError)