"""Forward getcert requests to the CA over a fresh TLS session per request."""

import logging
import ssl
from dataclasses import dataclass

from certrelay.common.errors import (
    CATrustError,
    CAUnreachableError,
    FramingError,
    TransportError,
    UpstreamError,
)
from certrelay.common.framing import MAX_BODY_BYTES, MAX_HEADER_BYTES, MESSAGE_TIMEOUT, FrameCodec
from certrelay.common.protocol import RequestType, serialize_request
from certrelay.transport import SecureChannel


logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class CAResponse:
    """The CA's answer, relayed to the client unmodified."""
    status: int
    body: bytes


class CAProxy:
    """
    Opens one CA session per request and always closes it; sessions are
    never shared between requests.
    """

    def __init__(
        self,
        channel: SecureChannel,
        host: str,
        port: int,
        server_name: str,
        max_header_bytes: int = MAX_HEADER_BYTES,
        max_body_bytes: int = MAX_BODY_BYTES,
        message_timeout: float = MESSAGE_TIMEOUT,
    ):
        self.channel = channel
        self.host = host
        self.port = port
        self.server_name = server_name
        self.max_header_bytes = max_header_bytes
        self.max_body_bytes = max_body_bytes
        self.message_timeout = message_timeout

    def _open(self):
        try:
            return self.channel.open(self.host, self.port, self.server_name)
        except ssl.SSLCertVerificationError as e:
            raise CATrustError(f"CA certificate rejected: {e.verify_message or e}") from e
        except OSError as e:
            raise CAUnreachableError(f"Cannot reach CA at {self.host}:{self.port}: {e}") from e

    def issue_certificate(self, username: str, password: str, csr: bytes = b"") -> CAResponse:
        """
        Forward a getcert request (credentials + optional CSR) to the CA.

        Returns:
            The CA's status code and body

        Raises:
            CAUnreachableError: Connection to the CA failed
            CATrustError: The CA's certificate did not verify
            UpstreamError: The CA session failed or answered with garbage
        """
        body = serialize_request(
            RequestType.GETCERT,
            {"username": username, "password": password},
            csr,
        )

        session = self._open()
        logger.info("[CA] Session opened to %s:%d for user '%s'", self.host, self.port, username)
        try:
            codec = FrameCodec(session, self.max_header_bytes, self.max_body_bytes, message_timeout=self.message_timeout)
            codec.write_request(body, host=self.server_name, content_type=FORM_CONTENT_TYPE)
            response = codec.read_message()
        except (TransportError, FramingError) as e:
            raise UpstreamError(f"CA session failed: {e}") from e
        finally:
            session.close()
            logger.info("[CA] Session closed")

        status = response.status_code
        if status is None:
            raise UpstreamError(f"CA sent a malformed status line: {response.start_line!r}")
        return CAResponse(status=status, body=response.body)
