"""CredentialStore lookups and the mailbox sink."""

import threading

import pytest

from certrelay.common.errors import InvalidUsernameError, RecipientNotFoundError
from certrelay.common.utils import sha256_hex
from certrelay.storage.credentials import CredentialStore
from certrelay.storage.mailbox import Mailbox


class TestCredentialStore:
    def test_lookup(self, pki):
        store = CredentialStore(pki.directory)
        assert store.lookup("bob") == pki.users["bob"].cert_path.read_bytes()

    def test_unknown_user(self, pki):
        with pytest.raises(RecipientNotFoundError) as exc_info:
            CredentialStore(pki.directory).lookup("carol")
        assert exc_info.value.username == "carol"

    @pytest.mark.parametrize("username", ["../ca", "Bob", "bob1", ""])
    def test_invalid_username(self, pki, username):
        """Only lowercase letters reach the filesystem."""
        with pytest.raises(InvalidUsernameError):
            CredentialStore(pki.directory).lookup(username)


class TestMailbox:
    def test_store_and_read(self, tmp_path):
        mailbox = Mailbox(tmp_path / "mbox")
        mailbox.store("bob", b"first\n|binary\x00", sender="alice")
        mailbox.store("bob", b"second", sender="carol")

        first, second = mailbox.entries("bob")
        assert (first.sender, first.payload) == ("alice", b"first\n|binary\x00")
        assert first.digest == sha256_hex(b"first\n|binary\x00")
        assert second.payload == b"second"
        assert first.timestamp <= second.timestamp

    def test_one_line_per_message(self, tmp_path):
        mailbox = Mailbox(tmp_path)
        mailbox.store("bob", b"a\nb\nc", sender="alice")
        assert len(mailbox.path_for("bob").read_text().splitlines()) == 1

    def test_empty_mailbox(self, tmp_path):
        assert Mailbox(tmp_path).entries("alice") == []

    def test_invalid_recipient(self, tmp_path):
        with pytest.raises(InvalidUsernameError):
            Mailbox(tmp_path).store("../x", b"")

    def test_concurrent_stores(self, tmp_path):
        mailbox = Mailbox(tmp_path)

        def write(n):
            for i in range(20):
                mailbox.store("bob", f"{n}-{i}".encode(), sender="alice")

        threads = [threading.Thread(target=write, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        payloads = {entry.payload for entry in mailbox.entries("bob")}
        assert len(payloads) == 100
