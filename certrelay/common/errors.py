"""Relay error taxonomy: transport, framing, protocol, auth, upstream."""


class RelayError(Exception):
    """Base exception for all relay errors."""
    pass


class ConfigError(RelayError):
    """Configuration is missing or invalid."""
    pass


# -------------------------
# Transport
# -------------------------

class TransportError(RelayError):
    """Read/write/connect failure on a secure session (fatal to the session)."""
    pass


class SessionClosedError(TransportError):
    """The peer closed the session, or it was closed locally."""
    pass


class SessionTimeoutError(TransportError, TimeoutError):
    """A read or write did not complete within the session deadline."""
    pass


# -------------------------
# Framing
# -------------------------

class FramingError(RelayError):
    """The byte stream does not carry a well-formed message."""
    pass


class TruncatedStreamError(FramingError):
    """The stream ended before the declared body length was reached."""
    pass


class MalformedHeaderError(FramingError):
    """No header terminator within the allowed size, or an empty start line."""
    pass


class InvalidContentLengthError(FramingError):
    """Content-Length is not a non-negative integer or exceeds the body cap."""
    pass


# -------------------------
# Protocol
# -------------------------

class ProtocolError(RelayError):
    """The request body is not a valid relay request."""
    pass


class MissingTypeError(ProtocolError):
    """The field list has no `type` field."""
    pass


class UnknownRequestTypeError(ProtocolError):
    """The `type` field is not getcert, changepw or sendmsg."""

    def __init__(self, request_type: str):
        super().__init__(f"Unknown request type: {request_type!r}")
        self.request_type = request_type


class MalformedFieldsError(ProtocolError):
    """The field list is not a valid `k=v&k=v` list."""
    pass


class InvalidUsernameError(ProtocolError):
    """Usernames are restricted to lowercase ASCII letters."""

    def __init__(self, username: str):
        super().__init__(f"Invalid username: {username!r}")
        self.username = username


# -------------------------
# Authentication
# -------------------------

class AuthenticationError(RelayError):
    """The peer failed to prove its identity."""
    pass


class ChallengeRejectedError(AuthenticationError):
    """The echoed challenge did not match the issued value."""
    pass


class PeerCertificateError(AuthenticationError):
    """The certificate presented for a sendmsg flow is not trusted."""
    pass


# -------------------------
# Upstream (CA leg)
# -------------------------

class UpstreamError(RelayError):
    """The CA could not serve a getcert request."""
    pass


class CAUnreachableError(UpstreamError):
    """Connecting to the CA endpoint failed."""
    pass


class CATrustError(UpstreamError):
    """The CA presented a certificate that does not chain to the trust anchor."""
    pass


# -------------------------
# Collaborators
# -------------------------

class RecipientNotFoundError(RelayError):
    """No certificate is on file for the requested recipient."""

    def __init__(self, username: str):
        super().__init__(f"No certificate on file for {username!r}")
        self.username = username


class RelayResponseError(RelayError):
    """The relay answered a client request with a non-200 status."""

    def __init__(self, status: int, body: bytes):
        super().__init__(f"Relay returned {status}: {body[:200]!r}")
        self.status = status
        self.body = body
