"""Request field list (first body line) + pydantic models per request type.

Body layout:

    type=<getcert|changepw|sendmsg>&username=<u>&...\\r\\n
    <raw payload: CSR, certificate PEM, ...>

The payload after the first line terminator is opaque and never scanned.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, field_validator

from certrelay.common.errors import (
    InvalidUsernameError,
    MalformedFieldsError,
    MissingTypeError,
    UnknownRequestTypeError,
)


FIELD_TERMINATOR = b"\r\n"


class RequestType(str, Enum):
    GETCERT = "getcert"
    CHANGEPW = "changepw"
    SENDMSG = "sendmsg"


def is_username_valid(username: str) -> bool:
    """Usernames are one or more lowercase ASCII letters."""
    return bool(username) and all("a" <= ch <= "z" for ch in username)


def check_username(username: str) -> str:
    if not is_username_valid(username):
        raise InvalidUsernameError(username)
    return username


class Request(BaseModel):
    """A parsed request: type, field map (type excluded) and raw payload."""
    type: RequestType
    fields: Dict[str, str] = {}
    payload: bytes = b""

    def field(self, name: str) -> str:
        """Required field lookup; a missing field is a protocol error."""
        try:
            return self.fields[name]
        except KeyError:
            raise MalformedFieldsError(f"{self.type.value} request is missing field {name!r}") from None


# -------------------------
# Typed field sets
# -------------------------

class _UserFields(BaseModel):
    username: str

    @field_validator("username")
    @classmethod
    def _valid_username(cls, value: str) -> str:
        return check_username(value)


class GetCertFields(_UserFields):
    """getcert: credentials forwarded to the CA."""
    password: str


class ChangePasswordFields(_UserFields):
    """changepw: acknowledged by the relay; mutation is the credential store's job."""
    old_password: str
    new_password: str


class SendMessageFields(_UserFields):
    """sendmsg round 1: the sender identifies itself."""
    pass


def _typed_fields(model: type, request: Request) -> BaseModel:
    values = {name: request.field(name) for name in model.model_fields}
    # Checked up front so callers see InvalidUsernameError, not a ValidationError
    check_username(values["username"])
    return model(**values)


def getcert_fields(request: Request) -> GetCertFields:
    return _typed_fields(GetCertFields, request)


def changepw_fields(request: Request) -> ChangePasswordFields:
    return _typed_fields(ChangePasswordFields, request)


def sendmsg_fields(request: Request) -> SendMessageFields:
    return _typed_fields(SendMessageFields, request)


# -------------------------
# Parse / serialize
# -------------------------

def split_first_line(body: bytes) -> tuple:
    """Split a body into (first line, remainder) at the first CRLF."""
    line, sep, rest = body.partition(FIELD_TERMINATOR)
    if not sep:
        # Tolerate a bare LF terminator
        line, sep, rest = body.partition(b"\n")
    return line, rest


def parse_fields(line: str) -> Dict[str, str]:
    """
    Parse ``k=v&k=v``; each token is split on its first ``=``.

    Raises:
        MalformedFieldsError: A token has no ``=``, an empty key, or a key repeats.
    """
    fields: Dict[str, str] = {}
    for token in line.split("&"):
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise MalformedFieldsError(f"Malformed field token: {token!r}")
        if key in fields:
            raise MalformedFieldsError(f"Duplicate field: {key!r}")
        fields[key] = value
    return fields


def parse_request(body: bytes) -> Request:
    """
    Parse a message body into a Request.

    Raises:
        MissingTypeError: No ``type`` field.
        UnknownRequestTypeError: ``type`` is not a known request type.
        MalformedFieldsError: The field line cannot be parsed.
    """
    line, payload = split_first_line(body)
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedFieldsError("Field line is not valid UTF-8") from e
    if not text.strip():
        raise MissingTypeError("Request has no field line")

    fields = parse_fields(text)
    request_type = fields.pop("type", None)
    if request_type is None:
        raise MissingTypeError("Request has no type field")
    try:
        kind = RequestType(request_type)
    except ValueError:
        raise UnknownRequestTypeError(request_type) from None
    return Request(type=kind, fields=fields, payload=payload)


def serialize_request(request_type: RequestType, fields: Optional[Dict[str, str]] = None, payload: bytes = b"") -> bytes:
    """Render ``type=...&k=v...``, CRLF, then the payload verbatim."""
    tokens = [f"type={RequestType(request_type).value}"]
    for key, value in (fields or {}).items():
        tokens.append(f"{key}={value}")
    return "&".join(tokens).encode("utf-8") + FIELD_TERMINATOR + payload


# -------------------------
# sendmsg echo round
# -------------------------

class EchoReply(BaseModel):
    """sendmsg round 2 first line: ``<number> <recipient>``."""
    number: str
    recipient: str


def parse_echo(body: bytes) -> Optional[EchoReply]:
    """
    Parse the echo line. Returns None when the line is not exactly two
    space-separated tokens; the caller treats that as a failed challenge.
    """
    line, _ = split_first_line(body)
    try:
        text = line.decode("ascii").strip()
    except UnicodeDecodeError:
        return None
    parts = text.split()
    if len(parts) != 2:
        return None
    return EchoReply(number=parts[0], recipient=parts[1])


def serialize_echo(number: str, recipient: str) -> bytes:
    """Echo body, padded with a trailing blank line."""
    return f"{number} {recipient}".encode("ascii") + b"\r\n\r\n"
