# allowlist.py
import logging
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS: tuple[str, ...] = (
    "api.example.com",
    "assets.example.com",
    "cdn.example.com",
    "api.openai.com",
    "maps.googleapis.com",
    "fonts.googleapis.com",
    "fonts.gstatic.com",
    "raw.githubusercontent.com",
    "githubusercontent.com",
    "api.github.com",
    "firebase.googleapis.com",
    "firestore.googleapis.com",
    "storage.googleapis.com",
    "jsonplaceholder.typicode.com",
    "dummyjson.com",
)

_FORBIDDEN_CHARS = frozenset("*/:@?#[]\\")


def normalize_host(value: str) -> str:
    """Lowercase a hostname and drop a single trailing dot."""
    host = value.strip().lower()
    if host.endswith("."):
        host = host[:-1]
    return host


def _valid_entry(host: str) -> bool:
    if not host or host.startswith(".") or ".." in host:
        return False
    if any(ch.isspace() or ch in _FORBIDDEN_CHARS for ch in host):
        return False
    return True


class AllowList:
    """Immutable set of upstream hostnames a request may target.

    A hostname matches an entry when it is equal to it or is a subdomain of it
    (``api.example.com`` matches ``example.com``, ``notexample.com`` does not).
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[str]) -> None:
        self._entries: frozenset[str] = frozenset(entries)

    @classmethod
    def build(
        cls,
        extra: Iterable[str] = (),
        static: Iterable[str] = DEFAULT_ALLOWED_HOSTS,
    ) -> "AllowList":
        """Merge the built-in hosts with operator entries; drop malformed ones."""
        entries: set[str] = set()
        for raw in (*static, *extra):
            host = normalize_host(raw)
            if not _valid_entry(host):
                logger.warning("Ignoring malformed allow-list entry %r", raw)
                continue
            entries.add(host)
        if not entries:
            raise ValueError("Allow-list is empty; refusing to start")
        return cls(entries)

    def is_allowed(self, hostname: str) -> bool:
        host = normalize_host(hostname)
        if not host:
            return False
        if host in self._entries:
            return True
        return any(host.endswith("." + entry) for entry in self._entries)

    def __contains__(self, hostname: str) -> bool:
        return self.is_allowed(hostname)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(sorted(self._entries))

    def __repr__(self) -> str:
        return f"AllowList({len(self._entries)} entries)"
