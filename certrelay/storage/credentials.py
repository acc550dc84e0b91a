"""Certificate lookup by username from a directory of ``<username>_cert.pem`` files."""

from pathlib import Path

from certrelay.common.errors import RecipientNotFoundError
from certrelay.common.protocol import check_username


class CredentialStore:
    """Read-only view of issued user certificates."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, username: str) -> Path:
        """
        Certificate path for a username (``scripts/gen_cert.py`` naming).

        Raises:
            InvalidUsernameError: If username is not lowercase letters only
        """
        return self.directory / f"{check_username(username)}_cert.pem"

    def lookup(self, username: str) -> bytes:
        """
        Return the PEM certificate on file for username.

        Raises:
            InvalidUsernameError: If username is not lowercase letters only
            RecipientNotFoundError: If no certificate is on file
        """
        path = self.path_for(username)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise RecipientNotFoundError(username) from None
