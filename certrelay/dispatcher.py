"""Per-connection request loop: read, parse, route, respond.

    AwaitingRequest -> Dispatching -> CAFlow | PwFlow | MsgFlow -> AwaitingRequest | Closed

Rounds within one session are strictly sequential. Protocol, upstream and
collaborator failures are answered with an error status and the loop goes
on; transport and framing failures close the session.
"""

import logging
from enum import Enum

from cryptography.hazmat.primitives.asymmetric import rsa

from certrelay.common.errors import (
    AuthenticationError,
    ChallengeRejectedError,
    FramingError,
    PeerCertificateError,
    ProtocolError,
    RecipientNotFoundError,
    SessionClosedError,
    TransportError,
    UpstreamError,
)
from certrelay.common.framing import FrameCodec
from certrelay.common.log import client_prefix
from certrelay.common.protocol import (
    Request,
    RequestType,
    changepw_fields,
    getcert_fields,
    parse_request,
    sendmsg_fields,
)
from certrelay.context import RelayContext
from certrelay.crypto.challenge import ChallengeAuthenticator
from certrelay.crypto.keys import get_public_key_from_cert
from certrelay.crypto.pki import validate_certificate_pem
from certrelay.transport import SecureSession


logger = logging.getLogger(__name__)

ACK_BODY = b"okay cool\n"
DELIVERED_BODY = b"ok"
REJECTED_BODY = b"Fake identity"
BAD_CERT_BODY = b"Bad certificate"
RELAY_ERROR_BODY = b"relay error"


class SessionState(str, Enum):
    AWAITING_REQUEST = "awaiting_request"
    DISPATCHING = "dispatching"
    CA_FLOW = "ca_flow"
    PW_FLOW = "pw_flow"
    MSG_FLOW = "msg_flow"
    CLOSED = "closed"


class SessionDispatcher:
    """Owns one accepted SecureSession from first request to close."""

    def __init__(self, session: SecureSession, context: RelayContext):
        self.session = session
        self.context = context
        self.codec = FrameCodec(
            session,
            context.max_header_bytes,
            context.max_body_bytes,
            message_timeout=context.message_timeout,
        )
        self.state = SessionState.AWAITING_REQUEST
        self.prefix = client_prefix(session.peer)
        self._handlers = {
            RequestType.GETCERT: self._handle_getcert,
            RequestType.CHANGEPW: self._handle_changepw,
            RequestType.SENDMSG: self._handle_sendmsg,
        }

    def run(self) -> None:
        """Serve rounds until the session ends; always releases the session."""
        logger.info("%s Connected", self.prefix)
        try:
            while True:
                try:
                    self.serve_round()
                except SessionClosedError:
                    logger.info("%s Session closed by peer", self.prefix)
                    break
                except (TransportError, FramingError) as e:
                    logger.warning("%s Session terminated: %s", self.prefix, e)
                    break
        finally:
            self.state = SessionState.CLOSED
            self.session.close()
            logger.info("%s Connection closed", self.prefix)

    def serve_round(self) -> None:
        """
        Handle one request (and, for sendmsg, its follow-up rounds).

        Raises:
            TransportError: The session failed (includes SessionClosedError)
            FramingError: The peer sent a malformed message
        """
        self.state = SessionState.AWAITING_REQUEST
        message = self.codec.read_message()
        self.state = SessionState.DISPATCHING
        try:
            request = parse_request(message.body)
            logger.info("%s %s request received", self.prefix, request.type.value)
            self._handlers[request.type](request)
        except (TransportError, FramingError):
            raise
        except ProtocolError as e:
            logger.warning("%s Bad request: %s", self.prefix, e)
            self._respond(400, str(e).encode("utf-8"))
        except AuthenticationError as e:
            logger.warning("%s Authentication failed: %s", self.prefix, e)
            self._respond(401, REJECTED_BODY)
        except RecipientNotFoundError as e:
            logger.warning("%s %s", self.prefix, e)
            self._respond(404, str(e).encode("utf-8"))
        except UpstreamError as e:
            logger.error("%s CA relay failed: %s", self.prefix, e)
            self._respond(502, RELAY_ERROR_BODY)
        except Exception:
            logger.exception("%s Unexpected error while handling request", self.prefix)
            self._respond(500, RELAY_ERROR_BODY)
        finally:
            self.state = SessionState.AWAITING_REQUEST

    def _respond(self, status: int, body: bytes) -> None:
        self.codec.write_response(status, body)

    # -----------------------------
    # getcert
    # -----------------------------

    def _handle_getcert(self, request: Request) -> None:
        self.state = SessionState.CA_FLOW
        fields = getcert_fields(request)
        logger.info("%s getcert for user '%s'", self.prefix, fields.username)

        response = self.context.ca_proxy.issue_certificate(fields.username, fields.password, request.payload)
        logger.info("%s CA answered %d (%d bytes)", self.prefix, response.status, len(response.body))
        self._respond(response.status, response.body)

    # -----------------------------
    # changepw
    # -----------------------------

    def _handle_changepw(self, request: Request) -> None:
        self.state = SessionState.PW_FLOW
        fields = changepw_fields(request)
        logger.info("%s changepw for user '%s'", self.prefix, fields.username)
        self._respond(200, ACK_BODY)

    # -----------------------------
    # sendmsg
    # -----------------------------

    def _sender_public_key(self, username: str, certificate: bytes) -> rsa.RSAPublicKey:
        """
        Public key of the sendmsg peer: the attached certificate, or the one
        on file, validated against the trust anchor with CN == username.

        Raises:
            PeerCertificateError: No usable certificate
        """
        if not certificate.strip():
            try:
                certificate = self.context.credentials.lookup(username)
            except RecipientNotFoundError:
                raise PeerCertificateError(f"No certificate attached or on file for '{username}'") from None

        cert = validate_certificate_pem(certificate, self.context.trust_anchor, expected_cn=username)
        try:
            return get_public_key_from_cert(cert)
        except ValueError as e:
            raise PeerCertificateError(str(e)) from e

    def _handle_sendmsg(self, request: Request) -> None:
        self.state = SessionState.MSG_FLOW
        fields = sendmsg_fields(request)

        try:
            public_key = self._sender_public_key(fields.username, request.payload)
        except PeerCertificateError as e:
            logger.warning("%s sendmsg certificate rejected: %s", self.prefix, e)
            self._respond(401, BAD_CERT_BODY)
            return

        authenticator = ChallengeAuthenticator(generate=self.context.challenge_source)
        self._respond(200, authenticator.issue(public_key))
        authenticator.sent()
        logger.info("%s Challenge sent to '%s'", self.prefix, fields.username)

        echo = self.codec.read_message()
        try:
            recipient = authenticator.verify(echo.body)
        except ChallengeRejectedError:
            logger.warning("%s Number does not match! Fake identity for '%s'", self.prefix, fields.username)
            self._respond(401, REJECTED_BODY)
            return
        logger.info("%s Identity confirmed for '%s', recipient '%s'", self.prefix, fields.username, recipient)

        self._respond(200, self.context.credentials.lookup(recipient))

        message = self.codec.read_message()
        self.context.mailbox.store(recipient, message.body, sender=fields.username)
        logger.info("%s Message (%d bytes) stored for '%s'", self.prefix, len(message.body), recipient)
        self._respond(200, DELIVERED_BODY)
