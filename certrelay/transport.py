"""TLS secure channel: context setup, outbound open, inbound accept.

Both roles (relay facing clients, relay facing the CA, and the client)
use the same SecureSession wrapper and the shared FrameCodec on top of it.
"""

import contextlib
import socket
import ssl
import threading
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.backends import default_backend


def create_server_context(cert: Path, key: Path, client_ca: Optional[Path] = None) -> ssl.SSLContext:
    """
    TLS server context presenting cert/key.

    When client_ca is given, clients must present a certificate issued by it.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=str(cert), keyfile=str(key))
    if client_ca is not None:
        context.load_verify_locations(cafile=str(client_ca))
        context.verify_mode = ssl.CERT_REQUIRED
    return context


def create_client_context(ca_cert: Path, cert: Optional[Path] = None, key: Optional[Path] = None) -> ssl.SSLContext:
    """
    TLS client context trusting only ca_cert, with hostname checking.

    cert/key are presented to servers that ask for a client certificate.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = True
    context.load_verify_locations(cafile=str(ca_cert))
    if cert is not None and key is not None:
        context.load_cert_chain(certfile=str(cert), keyfile=str(key))
    return context


class SecureSession:
    """
    One authenticated, encrypted byte stream.

    close() may be called from another thread; it shuts the socket down so
    a blocked recv() returns instead of hanging.
    """

    def __init__(self, sock: ssl.SSLSocket, peer=None):
        self._sock = sock
        self.peer = peer
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def peer_certificate(self) -> Optional[x509.Certificate]:
        """The verified peer certificate, if the peer presented one."""
        der = self._sock.getpeercert(binary_form=True)
        if not der:
            return None
        return x509.load_der_x509_certificate(der, default_backend())

    def recv(self, bufsize: int) -> bytes:
        if self._closed:
            return b""
        try:
            return self._sock.recv(bufsize)
        except ssl.SSLEOFError:
            # Peer went away without close_notify
            return b""

    def sendall(self, data: bytes) -> None:
        if self._closed:
            raise BrokenPipeError("Session is closed")
        self._sock.sendall(data)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        with contextlib.suppress(OSError, ValueError):
            self._sock.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self._sock.close()

    def __enter__(self) -> "SecureSession":
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<SecureSession peer={self.peer!r} closed={self._closed}>"


class SecureChannel:
    """Opens and accepts SecureSessions with one TLS context and I/O deadline."""

    def __init__(self, context: ssl.SSLContext, timeout: Optional[float] = None):
        self.context = context
        self.timeout = timeout

    @classmethod
    def server(cls, cert: Path, key: Path, client_ca: Optional[Path] = None, timeout: Optional[float] = None) -> "SecureChannel":
        return cls(create_server_context(cert, key, client_ca), timeout)

    @classmethod
    def client(cls, ca_cert: Path, cert: Optional[Path] = None, key: Optional[Path] = None, timeout: Optional[float] = None) -> "SecureChannel":
        return cls(create_client_context(ca_cert, cert, key), timeout)

    def open(self, host: str, port: int, server_hostname: str) -> SecureSession:
        """
        Connect and complete the TLS handshake, verifying the server
        certificate chain and hostname.

        Raises:
            ssl.SSLCertVerificationError: Server certificate is not trusted
            OSError: Connection or handshake failed
        """
        raw = socket.create_connection((host, port), timeout=self.timeout)
        try:
            sock = self.context.wrap_socket(raw, server_hostname=server_hostname)
        except BaseException:
            raw.close()
            raise
        return SecureSession(sock, peer=(host, port))

    def accept(self, raw: socket.socket, addr) -> SecureSession:
        """
        Complete the server-side TLS handshake on an accepted socket.

        Raises:
            ssl.SSLError / OSError: Handshake failed
        """
        raw.settimeout(self.timeout)
        try:
            sock = self.context.wrap_socket(raw, server_side=True)
        except BaseException:
            raw.close()
            raise
        return SecureSession(sock, peer=addr)
