"""Central logging helpers"""

import logging

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure stdlib logging for the relay and client entry points"""
    logging.basicConfig(level=level, format=_DEFAULT_FORMAT)
    logging.getLogger(__name__).debug("logging initialized")


def client_prefix(addr) -> str:
    """``[Client host:port]`` prefix used on per-session log lines."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"[Client {addr[0]}:{addr[1]}]"
    return f"[Client {addr}]"
