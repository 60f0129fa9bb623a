# target.py
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from fastapi import Request

from allowlist import AllowList, normalize_host
from errors import DomainNotAllowed, InvalidURL, MissingTarget

logger = logging.getLogger(__name__)

TARGET_QUERY_PARAM = "url"
TARGET_HEADER = "x-target-url"

_SCHEMES = {"http", "https"}
_BAD_HOST_CHARS = frozenset('<>"{}|\\^`%')


@dataclass(frozen=True)
class Target:
    raw: str
    scheme: str
    hostname: str
    port: int | None
    path: str  # path plus "?query", never empty

    @property
    def netloc(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        return host if self.port is None else f"{host}:{self.port}"

    @property
    def url(self) -> str:
        """Absolute upstream URL; userinfo and fragment are not carried over."""
        return f"{self.scheme}://{self.netloc}{self.path}"


def parse_target(raw: str) -> Target:
    """Parse an absolute http(s) URL into a Target, or raise InvalidURL."""
    try:
        parts = urlsplit(raw.strip())
        port = parts.port
    except ValueError:
        raise InvalidURL()

    scheme = parts.scheme.lower()
    hostname = normalize_host(parts.hostname or "")
    if scheme not in _SCHEMES or not hostname:
        raise InvalidURL()
    if any(ch.isspace() or ch in _BAD_HOST_CHARS for ch in hostname):
        raise InvalidURL()

    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query
    return Target(raw=raw, scheme=scheme, hostname=hostname, port=port, path=path)


def target_candidate(request: Request) -> str | None:
    """The ``url`` query parameter, else the ``X-Target-Url`` header."""
    return request.query_params.get(TARGET_QUERY_PARAM) or request.headers.get(TARGET_HEADER)


class TargetResolver:
    def __init__(self, allowlist: AllowList) -> None:
        self.allowlist = allowlist

    def check(self, raw: str) -> Target:
        target = parse_target(raw)
        if not self.allowlist.is_allowed(target.hostname):
            logger.warning("Rejected target host %s", target.hostname)
            raise DomainNotAllowed(target.hostname)
        return target

    def resolve(self, request: Request) -> Target:
        raw = target_candidate(request)
        if not raw:
            raise MissingTarget()
        return self.check(raw)
