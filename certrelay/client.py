"""Relay client: getcert, changepw and sendmsg over one TLS session."""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from certrelay.common.config import ClientConfig, load_client_config
from certrelay.common.errors import ConfigError, RelayError, RelayResponseError
from certrelay.common.framing import MAX_BODY_BYTES, MAX_HEADER_BYTES, FrameCodec, Message
from certrelay.common.log import setup_logging
from certrelay.common.protocol import RequestType, check_username, serialize_echo, serialize_request
from certrelay.crypto import envelope
from certrelay.crypto.issue import create_csr
from certrelay.crypto.keys import get_public_key_from_cert, load_private_key, private_key_decrypt
from certrelay.crypto.pki import load_ca_certificate, validate_certificate_pem
from certrelay.transport import SecureChannel, SecureSession


logger = logging.getLogger(__name__)


class RelayClient:
    """Client side of the relay protocol; one request/response at a time."""

    def __init__(
        self,
        session: SecureSession,
        host: str = "relay.local",
        max_header_bytes: int = MAX_HEADER_BYTES,
        max_body_bytes: int = MAX_BODY_BYTES,
    ):
        self.session = session
        self.host = host
        self.codec = FrameCodec(session, max_header_bytes, max_body_bytes)

    @classmethod
    def connect(cls, config: ClientConfig, timeout: Optional[float] = 30.0) -> "RelayClient":
        """
        Open a TLS session to the relay, verifying it against config.ca_cert.

        Raises:
            ssl.SSLCertVerificationError: Relay certificate not trusted
            OSError: Connection failed
        """
        channel = SecureChannel.client(config.ca_cert, config.cert, config.key, timeout=timeout)
        session = channel.open(config.server_host, config.server_port, config.server_name)
        return cls(session, host=config.server_name)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "RelayClient":
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> None:
        self.close()

    def exchange(self, body: bytes) -> Message:
        """Send one request body and read the response."""
        self.codec.write_request(body, host=self.host)
        return self.codec.read_message()

    @staticmethod
    def expect_ok(response: Message) -> bytes:
        """
        Body of a 200 response.

        Raises:
            RelayResponseError: Any other status
        """
        status = response.status_code
        if status != 200:
            raise RelayResponseError(status or 0, response.body)
        return response.body

    def get_certificate(self, username: str, password: str, csr: bytes = b"") -> bytes:
        """
        Ask the relay to obtain a certificate from the CA.

        Returns:
            The CA's response body (the issued certificate PEM)
        """
        check_username(username)
        body = serialize_request(RequestType.GETCERT, {"username": username, "password": password}, csr)
        return self.expect_ok(self.exchange(body))

    def change_password(self, username: str, old_password: str, new_password: str, csr: bytes = b"") -> bytes:
        check_username(username)
        body = serialize_request(
            RequestType.CHANGEPW,
            {"username": username, "old_password": old_password, "new_password": new_password},
            csr,
        )
        return self.expect_ok(self.exchange(body))

    def send_message(
        self,
        username: str,
        certificate: bytes,
        private_key: rsa.RSAPrivateKey,
        recipient: str,
        message: bytes,
        trust_anchor: Optional[x509.Certificate] = None,
    ) -> bytes:
        """
        Prove identity to the relay, fetch the recipient's certificate and
        deliver the message sealed to it.

        Args:
            username: Sender username (CN of certificate)
            certificate: Sender certificate PEM
            private_key: Sender private key, used to open the challenge
            recipient: Recipient username
            message: Plaintext message
            trust_anchor: When given, the recipient certificate must chain to it

        Returns:
            The relay's final acknowledgment body

        Raises:
            RelayResponseError: The relay rejected a round (401 on a failed challenge)
        """
        check_username(username)
        check_username(recipient)

        sealed_challenge = self.expect_ok(
            self.exchange(serialize_request(RequestType.SENDMSG, {"username": username}, certificate))
        )
        number = private_key_decrypt(private_key, sealed_challenge).decode("ascii")
        logger.debug("Challenge opened, echoing for recipient '%s'", recipient)

        recipient_cert = self.expect_ok(self.exchange(serialize_echo(number, recipient)))
        if trust_anchor is not None:
            cert = validate_certificate_pem(recipient_cert, trust_anchor, expected_cn=recipient)
        else:
            cert = recipient_cert

        payload = envelope.seal(get_public_key_from_cert(cert), message)
        return self.expect_ok(self.exchange(payload))


def _read_file(path: Optional[str]) -> bytes:
    if not path:
        return b""
    with open(path, "rb") as f:
        return f.read()


def _require(value, name: str):
    if value is None:
        raise ConfigError(f"{name} is required (set it in the config file or on the command line)")
    return value


def main(argv=None):
    parser = argparse.ArgumentParser(description="Certificate relay client")
    parser.add_argument("--config", type=str, default="config", help="Client config file (default: ./config)")
    parser.add_argument("--username", type=str, default=None, help="Username (default: from config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    getcert = commands.add_parser("getcert", help="Obtain a certificate through the relay")
    getcert.add_argument("--csr", type=str, default=None, help="Certificate signing request (default: built from the config key)")
    getcert.add_argument("--out", type=str, required=True, help="Where to store the issued certificate")

    changepw = commands.add_parser("changepw", help="Change the account password")
    changepw.add_argument("--csr", type=str, default=None, help="Certificate signing request (PEM)")

    sendmsg = commands.add_parser("sendmsg", help="Send a message to another user")
    sendmsg.add_argument("recipient", type=str, help="Recipient username")
    sendmsg.add_argument("--file", type=str, default=None, help="Message file (default: read stdin)")

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        config = load_client_config(Path(args.config))
        username = check_username(_require(args.username or config.username, "username"))
    except (ConfigError, RelayError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    try:
        client = RelayClient.connect(config)
        print(f"[OK] Connected to relay {config.server_host}:{config.server_port}")
    except OSError as e:
        print(f"ERROR: Failed to connect to relay: {e}")
        sys.exit(1)

    try:
        with client:
            if args.command == "getcert":
                if args.csr:
                    csr = _read_file(args.csr)
                else:
                    csr = create_csr(username, load_private_key(_require(config.key, "key")))
                password = getpass.getpass("Password: ")
                cert = client.get_certificate(username, password, csr)
                Path(args.out).write_bytes(cert)
                print(f"[OK] Certificate saved to: {args.out}")

            elif args.command == "changepw":
                old_password = getpass.getpass("Old password: ")
                new_password = getpass.getpass("New password: ")
                client.change_password(username, old_password, new_password, _read_file(args.csr))
                print("[OK] Password change accepted")

            elif args.command == "sendmsg":
                cert_path = _require(config.cert, "cert")
                key_path = _require(config.key, "key")
                message = _read_file(args.file) if args.file else sys.stdin.buffer.read()
                client.send_message(
                    username,
                    _read_file(str(cert_path)),
                    load_private_key(key_path),
                    args.recipient,
                    message,
                    trust_anchor=load_ca_certificate(config.ca_cert),
                )
                print(f"[OK] Message delivered to {args.recipient}")

    except RelayResponseError as e:
        print(f"HTTP error code: {e.status}")
        print(e.body.decode("utf-8", errors="replace"))
        sys.exit(1)
    except (RelayError, OSError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
