"""Shared fixtures: throwaway PKI, stub CA server, scripted byte streams."""

import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from certrelay.ca_proxy import CAProxy
from certrelay.common.errors import FramingError, SessionTimeoutError, TransportError
from certrelay.common.framing import FrameCodec, Message
from certrelay.common.protocol import parse_request
from certrelay.context import RelayContext
from certrelay.crypto.issue import (
    certificate_pem,
    create_root_ca,
    generate_rsa_key,
    issue_certificate,
    sign_csr,
    write_key_pair,
)
from certrelay.storage.credentials import CredentialStore
from certrelay.storage.mailbox import Mailbox
from certrelay.transport import SecureChannel


FIXED_CHALLENGE = 42
USERS = ("alice", "bob")


# -------------------------
# PKI
# -------------------------

@dataclass
class Identity:
    key: rsa.RSAPrivateKey
    cert: x509.Certificate
    key_path: Path
    cert_path: Path

    @property
    def cert_pem(self) -> bytes:
        return certificate_pem(self.cert)


@dataclass
class PKI:
    directory: Path
    ca: Identity
    relay: Identity
    ca_server: Identity
    users: Dict[str, Identity]
    rogue_ca: Identity
    mallory: Identity
    expired_alice: Identity


def _identity(directory: Path, prefix: str, cn: str, ca: Optional[Identity] = None, **kwargs) -> Identity:
    key = generate_rsa_key()
    if ca is None:
        cert = create_root_ca(cn, key)
    else:
        cert = issue_certificate(cn, key.public_key(), ca.key, ca.cert, **kwargs)
    key_path, cert_path = write_key_pair(key, cert, directory / prefix)
    return Identity(key, cert, key_path, cert_path)


@pytest.fixture(scope="session")
def pki(tmp_path_factory) -> PKI:
    """CA, relay/CA-server TLS identities and user certificates in one directory."""
    directory = tmp_path_factory.mktemp("certs")
    ca = _identity(directory, "ca", "Test Root CA")
    relay = _identity(directory, "relay", "relay.local", ca, dns_names=["relay.local", "localhost"])
    ca_server = _identity(directory, "caserver", "ca.local", ca)
    users = {name: _identity(directory, name, name, ca) for name in USERS}

    rogue_dir = tmp_path_factory.mktemp("rogue")
    rogue_ca = _identity(rogue_dir, "ca", "Rogue CA")
    mallory = _identity(rogue_dir, "mallory", "alice", rogue_ca)
    expired_alice = _identity(
        rogue_dir,
        "expired",
        "alice",
        ca,
        valid_days=1,
        not_before=datetime.now(timezone.utc) - timedelta(days=30),
    )
    return PKI(directory, ca, relay, ca_server, users, rogue_ca, mallory, expired_alice)


# -------------------------
# Scripted streams
# -------------------------

class ChunkedStream:
    """
    In-memory stream: recv() hands out `incoming` in the given fragment
    sizes (then whatever is left), sendall() records into `sent`.
    """

    def __init__(self, incoming: bytes = b"", chunks: Optional[List[int]] = None, fail_with: Optional[BaseException] = None):
        self._incoming = bytearray(incoming)
        self._chunks = list(chunks or [])
        self._fail_with = fail_with
        self.sent = bytearray()
        self.recv_calls = 0

    def recv(self, bufsize: int) -> bytes:
        self.recv_calls += 1
        if self._fail_with is not None and not self._incoming:
            raise self._fail_with
        size = self._chunks.pop(0) if self._chunks else bufsize
        size = min(size, bufsize)
        data = bytes(self._incoming[:size])
        del self._incoming[:size]
        return data

    def sendall(self, data: bytes) -> None:
        self.sent += data


class ScriptedSession(ChunkedStream):
    """A SecureSession stand-in for driving a SessionDispatcher."""

    def __init__(self, incoming: bytes = b"", peer=("127.0.0.1", 50000), **kwargs):
        super().__init__(incoming, **kwargs)
        self.peer = peer
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def responses(self) -> List[Message]:
        """Parse everything sent so far as framed responses."""
        codec = FrameCodec(ChunkedStream(bytes(self.sent)))
        messages = []
        while True:
            try:
                messages.append(codec.read_message())
            except TransportError:
                return messages


def frame_request(body: bytes, host: str = "relay.local") -> bytes:
    """Bytes of one framed client request."""
    stream = ChunkedStream()
    FrameCodec(stream).write_request(body, host=host)
    return bytes(stream.sent)


# -------------------------
# Stub CA server
# -------------------------

@dataclass
class StubCA:
    """
    In-process TLS CA. By default it signs the CSR in a getcert payload and
    answers 200 with the certificate PEM; set `responder` to change that.
    """
    pki: PKI
    responder: Optional[Callable[[Message], Tuple[int, bytes]]] = None
    requests: List[Message] = field(default_factory=list)
    connections: int = 0
    closed_by_peer: int = 0

    def __post_init__(self):
        self._channel = SecureChannel.server(self.pki.ca_server.cert_path, self.pki.ca_server.key_path, timeout=5)
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(8)
        self._sock.settimeout(0.2)
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._handlers: List[threading.Thread] = []

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    def start(self) -> "StubCA":
        self._thread.start()
        return self

    def stop(self) -> None:
        """Stop accepting and wait for in-flight connections to finish."""
        self._stop.set()
        self._thread.join(timeout=5)
        self._sock.close()
        for handler in list(self._handlers):
            handler.join(timeout=5)

    def default_response(self, message: Message) -> Tuple[int, bytes]:
        request = parse_request(message.body)
        if not request.payload:
            return 400, b"CSR required"
        cert = sign_csr(request.payload, self.pki.ca.key, self.pki.ca.cert)
        return 200, certificate_pem(cert)

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            handler = threading.Thread(target=self._handle, args=(conn, addr), daemon=True)
            self._handlers.append(handler)
            handler.start()

    def _handle(self, conn, addr) -> None:
        try:
            session = self._channel.accept(conn, addr)
        except OSError:
            return
        with self._lock:
            self.connections += 1
        with session:
            codec = FrameCodec(session)
            try:
                message = codec.read_message()
            except (TransportError, FramingError):
                return
            with self._lock:
                self.requests.append(message)
            status, body = (self.responder or self.default_response)(message)
            codec.write_response(status, body)
            # The proxy must close its side after one response
            try:
                codec.read_message()
            except SessionTimeoutError:
                pass
            except (TransportError, FramingError):
                with self._lock:
                    self.closed_by_peer += 1


@pytest.fixture
def stub_ca(pki):
    ca = StubCA(pki).start()
    yield ca
    ca.stop()


@pytest.fixture
def ca_proxy(pki, stub_ca) -> CAProxy:
    channel = SecureChannel.client(pki.ca.cert_path, timeout=5)
    return CAProxy(channel, "127.0.0.1", stub_ca.port, "ca.local")


@pytest.fixture
def relay_context(pki, ca_proxy, tmp_path) -> RelayContext:
    return RelayContext(
        ca_proxy=ca_proxy,
        credentials=CredentialStore(pki.directory),
        mailbox=Mailbox(tmp_path / "mailbox"),
        trust_anchor=pki.ca.cert,
        challenge_source=lambda: FIXED_CHALLENGE,
    )
