"""Process-wide, read-only state shared by every session."""

from dataclasses import dataclass
from typing import Callable

from cryptography import x509

from certrelay.ca_proxy import CAProxy
from certrelay.common.config import RelayConfig
from certrelay.common.framing import MAX_BODY_BYTES, MAX_HEADER_BYTES, MESSAGE_TIMEOUT
from certrelay.crypto.challenge import system_challenge
from certrelay.crypto.pki import load_ca_certificate
from certrelay.storage.credentials import CredentialStore
from certrelay.storage.mailbox import Mailbox
from certrelay.transport import SecureChannel


@dataclass(frozen=True)
class RelayContext:
    """
    Built once by the listener and handed to each SessionDispatcher.

    Nothing here is mutated after construction; the challenge source and
    the storage collaborators are safe to call from several sessions.
    """
    ca_proxy: CAProxy
    credentials: CredentialStore
    mailbox: Mailbox
    trust_anchor: x509.Certificate
    challenge_source: Callable[[], int] = system_challenge
    max_header_bytes: int = MAX_HEADER_BYTES
    max_body_bytes: int = MAX_BODY_BYTES
    message_timeout: float = MESSAGE_TIMEOUT

    @classmethod
    def from_config(cls, config: RelayConfig) -> "RelayContext":
        """
        Load the trust anchor and wire the collaborators.

        Raises:
            BadCertError: If the CA certificate cannot be loaded
        """
        ca_channel = SecureChannel.client(config.ca_cert, timeout=config.io_timeout)
        ca_proxy = CAProxy(
            ca_channel,
            config.ca_host,
            config.ca_port,
            config.ca_server_name,
            config.max_header_bytes,
            config.max_body_bytes,
            config.message_timeout,
        )
        return cls(
            ca_proxy=ca_proxy,
            credentials=CredentialStore(config.credentials_dir),
            mailbox=Mailbox(config.mailbox_dir),
            trust_anchor=load_ca_certificate(config.ca_cert),
            max_header_bytes=config.max_header_bytes,
            max_body_bytes=config.max_body_bytes,
            message_timeout=config.message_timeout,
        )
