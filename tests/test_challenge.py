"""ChallengeAuthenticator state machine and sealing."""

from unittest import mock

import pytest

from certrelay.common.errors import ChallengeRejectedError
from certrelay.crypto.challenge import (
    CHALLENGE_RANGE,
    ChallengeAuthenticator,
    ChallengeState,
    system_challenge,
)
from certrelay.crypto.keys import private_key_decrypt


def _awaiting(value=42, public_key=None):
    authenticator = ChallengeAuthenticator(generate=lambda: value, encrypt=mock.Mock(return_value=b"sealed"))
    authenticator.issue(public_key)
    authenticator.sent()
    return authenticator


class TestChallengeAuthenticator:
    def test_confirmed_on_exact_echo(self):
        authenticator = _awaiting(42)
        assert authenticator.verify(b"42 bob\r\n\r\n") == "bob"
        assert authenticator.state is ChallengeState.CONFIRMED

    def test_rejected_on_wrong_number(self):
        """A wrong number is rejected and never yields a recipient."""
        authenticator = _awaiting(42)
        with pytest.raises(ChallengeRejectedError):
            authenticator.verify(b"43 bob\r\n\r\n")
        assert authenticator.state is ChallengeState.REJECTED

    @pytest.mark.parametrize("body", [b"042 bob", b"+42 bob", b"42", b"", b"42.0 bob", b"99999999999999 bob"])
    def test_rejected_on_malformed_echo(self, body):
        authenticator = _awaiting(42)
        with pytest.raises(ChallengeRejectedError):
            authenticator.verify(body)

    def test_single_use(self):
        """The value is gone after one verification, whatever the result."""
        authenticator = _awaiting(42)
        authenticator.verify(b"42 bob")
        with pytest.raises(RuntimeError):
            authenticator.verify(b"42 bob")

    def test_cannot_verify_before_sent(self):
        authenticator = ChallengeAuthenticator(generate=lambda: 1, encrypt=mock.Mock(return_value=b""))
        authenticator.issue(None)
        assert authenticator.state is ChallengeState.CHALLENGE_SENT
        with pytest.raises(RuntimeError):
            authenticator.verify(b"1 bob")

    def test_issue_only_once(self):
        authenticator = _awaiting(7)
        with pytest.raises(RuntimeError):
            authenticator.issue(None)

    def test_sealed_under_public_key(self, pki):
        """Only the private-key holder can read the issued value."""
        alice = pki.users["alice"]
        authenticator = ChallengeAuthenticator(generate=lambda: 1234567)
        ciphertext = authenticator.issue(alice.cert.public_key())
        assert private_key_decrypt(alice.key, ciphertext) == b"1234567"

    def test_wrong_key_cannot_open(self, pki):
        authenticator = ChallengeAuthenticator(generate=lambda: 5)
        ciphertext = authenticator.issue(pki.users["alice"].cert.public_key())
        with pytest.raises(ValueError):
            private_key_decrypt(pki.users["bob"].key, ciphertext)


class TestSystemChallenge:
    def test_range(self):
        values = {system_challenge() for _ in range(200)}
        assert all(0 <= v < CHALLENGE_RANGE for v in values)
        assert len(values) > 1
