"""One-time numeric challenge used to confirm a sendmsg peer's identity.

    Idle -> ChallengeSent -> AwaitingEcho -> Confirmed | Rejected

The relay seals a fresh decimal number under the sender's public key; only
the private-key holder can echo it back. Comparison is exact on the decimal
string (no numeric normalisation, so ``042`` never matches ``42``).
"""

import hmac
import secrets
from enum import Enum
from typing import Callable, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from certrelay.common.errors import ChallengeRejectedError
from certrelay.common.protocol import parse_echo
from certrelay.crypto.keys import public_key_encrypt


CHALLENGE_RANGE = 2 ** 31  # values are 0 .. 2**31 - 1
MAX_ECHO_DIGITS = len(str(CHALLENGE_RANGE - 1))


def system_challenge() -> int:
    """Challenge source backed by the OS CSPRNG (safe across threads)."""
    return secrets.randbelow(CHALLENGE_RANGE)


class ChallengeState(str, Enum):
    IDLE = "idle"
    CHALLENGE_SENT = "challenge_sent"
    AWAITING_ECHO = "awaiting_echo"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ChallengeAuthenticator:
    """Runs one challenge for one sendmsg attempt; never reused."""

    def __init__(
        self,
        generate: Callable[[], int] = system_challenge,
        encrypt: Callable[[rsa.RSAPublicKey, bytes], bytes] = public_key_encrypt,
    ):
        self._generate = generate
        self._encrypt = encrypt
        self._value: Optional[str] = None
        self.state = ChallengeState.IDLE

    def _require(self, state: ChallengeState) -> None:
        if self.state is not state:
            raise RuntimeError(f"Challenge is {self.state.value}, expected {state.value}")

    def issue(self, public_key: rsa.RSAPublicKey) -> bytes:
        """
        Generate a fresh value and seal it under the peer's public key.

        Returns:
            Ciphertext to send as the response body.
        """
        self._require(ChallengeState.IDLE)
        value = str(self._generate())
        ciphertext = self._encrypt(public_key, value.encode("ascii"))
        self._value = value
        self.state = ChallengeState.CHALLENGE_SENT
        return ciphertext

    def sent(self) -> None:
        """The sealed challenge has been written to the peer."""
        self._require(ChallengeState.CHALLENGE_SENT)
        self.state = ChallengeState.AWAITING_ECHO

    def verify(self, body: bytes) -> str:
        """
        Compare the echoed number with the issued value. The value is
        discarded whatever the outcome.

        Args:
            body: Echo message body, first line ``<number> <recipient>``

        Returns:
            The recipient identifier on confirmation.

        Raises:
            ChallengeRejectedError: Malformed echo or value mismatch.
        """
        self._require(ChallengeState.AWAITING_ECHO)
        expected, self._value = self._value, None

        echo = parse_echo(body)
        if (
            echo is None
            or not echo.number.isdigit()
            or len(echo.number) > MAX_ECHO_DIGITS
            or not hmac.compare_digest(echo.number.encode("ascii"), expected.encode("ascii"))
        ):
            self.state = ChallengeState.REJECTED
            raise ChallengeRejectedError("Echoed challenge does not match")

        self.state = ChallengeState.CONFIRMED
        return echo.recipient
