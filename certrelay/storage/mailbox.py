"""Append-only per-recipient mailbox for relayed messages.

One file per recipient, one line per message:

    timestamp_ms | sender | base64(payload) | sha256(payload)
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List

from certrelay.common.protocol import check_username
from certrelay.common.utils import b64d, b64e, now_ms, sha256_hex


@dataclass
class MailboxEntry:
    timestamp: int
    sender: str
    payload: bytes
    digest: str


class Mailbox:
    """Message sink: stores opaque payloads for a recipient."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, recipient: str) -> Path:
        return self.directory / f"{check_username(recipient)}.mbox"

    def store(self, recipient: str, payload: bytes, sender: str = "") -> MailboxEntry:
        """
        Append a message to the recipient's mailbox.

        Args:
            recipient: Recipient username
            payload: Message bytes, stored unmodified
            sender: Authenticated sender username

        Returns:
            The stored entry
        """
        entry = MailboxEntry(
            timestamp=now_ms(),
            sender=sender,
            payload=payload,
            digest=sha256_hex(payload),
        )
        line = f"{entry.timestamp}|{entry.sender}|{b64e(entry.payload)}|{entry.digest}\n"
        path = self.path_for(recipient)

        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
        return entry

    def entries(self, recipient: str) -> List[MailboxEntry]:
        """All messages stored for recipient, oldest first."""
        path = self.path_for(recipient)
        if not path.exists():
            return []

        result = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line:
                    continue
                timestamp, sender, payload, digest = line.split("|")
                result.append(MailboxEntry(int(timestamp), sender, b64d(payload), digest))
        return result
