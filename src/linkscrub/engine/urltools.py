"""URL helpers for the cleaning engine.

The transformer edits URLs as text so that everything it does not remove
keeps its original spelling and encoding. This module provides:
- Absolute URL validation
- Host extraction and local-network detection
- Query/fragment parameter splitting and reassembly
- Repeated percent-decoding of redirect targets
"""

import ipaddress
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import unquote, unquote_plus, urlsplit, SplitResult

from linkscrub.core.constants import LOCAL_NETWORKS
from linkscrub.core.exceptions import MalformedURLError


_LOCAL_NETWORKS = tuple(ipaddress.ip_network(net) for net in LOCAL_NETWORKS)

MAX_DECODE_ROUNDS = 10


def split_absolute(url: str) -> SplitResult:
    """Parse an absolute URL.

    Raises:
        MalformedURLError: If the value is not a string, has no scheme or
            no host, or cannot be parsed
    """
    if not url or not isinstance(url, str):
        raise MalformedURLError(f"Invalid URL: {url!r}")
    if any(ch.isspace() for ch in url.strip()) or url != url.strip():
        raise MalformedURLError(f"URL contains whitespace: {url!r}")
    try:
        parsed = urlsplit(url)
        # Accessing port validates it
        parsed.port
    except ValueError as e:
        raise MalformedURLError(f"Failed to parse URL '{url}': {e}") from e
    if not parsed.scheme or not parsed.netloc or not parsed.hostname:
        raise MalformedURLError(f"URL is not absolute: {url!r}")
    return parsed


def normalize_host(host: Optional[str]) -> Optional[str]:
    """Lower-case a hostname and strip one trailing dot."""
    if not host:
        return None
    host = host.strip().lower()
    if host.endswith("."):
        host = host[:-1]
    return host or None


def host_of(url: str) -> Optional[str]:
    """Return the normalized host of an absolute URL, or None."""
    try:
        return normalize_host(split_absolute(url).hostname)
    except MalformedURLError:
        return None


def is_local_host(host: Optional[str]) -> bool:
    """Check whether a host is localhost or a private/loopback address."""
    if not host:
        return False
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return any(address in network for network in _LOCAL_NETWORKS if network.version == address.version)


def decode_url(value: str) -> str:
    """Percent-decode a URL until it stops changing.

    Targets that do not start with ``http`` get an ``http://`` prefix so
    scheme-less redirect destinations stay absolute.
    """
    decoded = unquote(value)
    rounds = 1
    while decoded != unquote(decoded) and rounds < MAX_DECODE_ROUNDS:
        decoded = unquote(decoded)
        rounds += 1
    if not decoded.startswith("http"):
        decoded = "http://" + decoded
    return decoded


# ============================================================================
# Parameter Splitting
# ============================================================================

@dataclass
class URLParts:
    """URL split into base, query and fragment text.

    ``query``/``fragment`` are None when the URL has no ``?``/``#`` at all.
    """
    base: str
    query: Optional[str]
    fragment: Optional[str]

    @classmethod
    def split(cls, url: str) -> "URLParts":
        before_hash, hash_sep, fragment = url.partition("#")
        base, query_sep, query = before_hash.partition("?")
        return cls(
            base=base,
            query=query if query_sep else None,
            fragment=fragment if hash_sep else None,
        )

    def join(self) -> str:
        url = self.base
        if self.query:
            url += "?" + self.query
        if self.fragment:
            url += "#" + self.fragment
        return url


def parameter_name(segment: str) -> str:
    """Decoded name of a ``name=value`` segment."""
    return unquote_plus(segment.split("=", 1)[0])


def strip_parameters(text: Optional[str], should_remove: Callable[[str], bool]) -> tuple[Optional[str], int]:
    """Remove ``&``-separated parameters whose name matches.

    Args:
        text: Query or fragment text without the leading separator
        should_remove: Predicate on the decoded parameter name

    Returns:
        Tuple of (new text, number of parameters removed). The text is
        returned unchanged when nothing was removed.
    """
    if not text:
        return text, 0

    kept = []
    removed = 0
    for segment in text.split("&"):
        if not segment:
            continue
        name = parameter_name(segment)
        if name and should_remove(name):
            removed += 1
        else:
            kept.append(segment)

    if removed == 0:
        return text, 0
    return "&".join(kept), removed


def drop_empty_segments(text: Optional[str]) -> Optional[str]:
    """Collapse runs of ``&`` left behind by deletions (``?&a=1&&b=2&``)."""
    if text is None:
        return None
    return "&".join(segment for segment in text.split("&") if segment)


def tidy_separators(url: str) -> str:
    """Drop empty parameters, and the ``?``/``#`` of an emptied query or fragment."""
    parts = URLParts.split(url)
    parts.query = drop_empty_segments(parts.query)
    parts.fragment = drop_empty_segments(parts.fragment)
    return parts.join()
