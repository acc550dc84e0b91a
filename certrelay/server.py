"""Relay server: TLS listener handing each connection to a SessionDispatcher.

Sessions run concurrently on a bounded worker pool; ordering guarantees
hold within one session only.
"""

import argparse
import logging
import socket
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Set

from certrelay.common.config import RelayConfig
from certrelay.common.errors import ConfigError, PeerCertificateError
from certrelay.common.log import client_prefix, setup_logging
from certrelay.context import RelayContext
from certrelay.crypto.pki import load_certificate, validate_certificate
from certrelay.dispatcher import SessionDispatcher
from certrelay.transport import SecureChannel, SecureSession


logger = logging.getLogger(__name__)

ACCEPT_POLL_INTERVAL = 0.5


class RelayServer:
    """
    Accepts TLS connections and runs one SessionDispatcher per connection,
    at most max_workers at a time. accept() waits while the pool is full.
    """

    def __init__(
        self,
        channel: SecureChannel,
        context: RelayContext,
        host: str = "0.0.0.0",
        port: int = 8080,
        max_workers: int = 16,
    ):
        self.channel = channel
        self.context = context
        self.host = host
        self.port = port
        self.max_workers = max_workers
        self._sock: Optional[socket.socket] = None
        self._stopping = threading.Event()
        self._slots = threading.BoundedSemaphore(max_workers)
        self._active: Set[SecureSession] = set()
        self._active_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RelayConfig) -> "RelayServer":
        channel = SecureChannel.server(config.cert, config.key, config.client_ca, timeout=config.io_timeout)
        return cls(channel, RelayContext.from_config(config), config.host, config.port, config.max_workers)

    @property
    def address(self) -> tuple:
        """Bound (host, port); port is resolved when bound to 0."""
        if self._sock is None:
            return self.host, self.port
        return self._sock.getsockname()[:2]

    def bind(self) -> tuple:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(5)
        except OSError:
            sock.close()
            raise
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self._sock = sock
        return self.address

    def serve_forever(self) -> None:
        if self._sock is None:
            self.bind()
        host, port = self.address
        logger.info("[OK] Relay listening on %s:%d", host, port)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relay-session") as executor:
            try:
                self._accept_loop(executor)
            finally:
                self.shutdown()
        logger.info("Relay stopped")

    def _accept_loop(self, executor: ThreadPoolExecutor) -> None:
        while not self._stopping.is_set():
            if not self._slots.acquire(timeout=ACCEPT_POLL_INTERVAL):
                continue
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                self._slots.release()
                continue
            except OSError:
                self._slots.release()
                if self._stopping.is_set():
                    break
                raise
            executor.submit(self._run_session, conn, addr)

    def _run_session(self, conn: socket.socket, addr) -> None:
        prefix = client_prefix(addr)
        try:
            try:
                session = self.channel.accept(conn, addr)
            except OSError as e:
                logger.warning("%s TLS handshake failed: %s", prefix, e)
                return

            with self._active_lock:
                self._active.add(session)
            try:
                SessionDispatcher(session, self.context).run()
            except Exception:
                logger.exception("%s Session crashed", prefix)
            finally:
                with self._active_lock:
                    self._active.discard(session)
        finally:
            self._slots.release()

    def shutdown(self) -> None:
        """Stop accepting and close every active session."""
        self._stopping.set()
        if self._sock is not None:
            self._sock.close()
        with self._active_lock:
            sessions = list(self._active)
        for session in sessions:
            session.close()

    @property
    def active_sessions(self) -> int:
        with self._active_lock:
            return len(self._active)


def _check_identity(config: RelayConfig) -> None:
    """Exit with a hint when the relay identity or trust anchor is missing."""
    if not config.cert.exists():
        logger.error("Relay certificate not found at %s", config.cert)
        logger.error("Please run: python scripts/gen_cert.py --cn relay.local --out certs/relay")
        sys.exit(1)

    if not config.ca_cert.exists():
        logger.error("CA certificate not found at %s", config.ca_cert)
        logger.error("Please run: python scripts/gen_ca.py --name 'Relay Root CA'")
        sys.exit(1)

    try:
        validate_certificate(load_certificate(config.cert), load_certificate(config.ca_cert))
        logger.info("[OK] Relay certificate loaded and validated")
    except PeerCertificateError as e:
        logger.warning("Relay certificate does not chain to the configured CA: %s", e)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Certificate relay server")
    parser.add_argument("--host", type=str, default=None, help="Listen address (default: RELAY_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: RELAY_PORT or 8080)")
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        config = RelayConfig.from_env(
            Path(args.env_file) if args.env_file else None,
            host=args.host,
            port=args.port,
        )
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)

    _check_identity(config)

    try:
        server = RelayServer.from_config(config)
        server.bind()
    except (OSError, PeerCertificateError) as e:
        logger.error("Failed to start relay: %s", e)
        sys.exit(1)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down relay...")
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
