"""Whitelist gate.

Decides whether a URL is fully exempt from cleaning. Supported pattern
forms (case-insensitive):

- ``example.com``       example.com and every subdomain
- ``*.example.com``     same as above
- ``||example.com^``    adblock-style anchor, same as above
- ``example.*``         example under any public suffix, plus subdomains
- ``*.example.*``       subdomains of example under any public suffix
- ``https://example.com`` / ``*://example.com``  optional scheme restriction

Public suffixes come from the Public Suffix List snapshot bundled with
tldextract. A host under an unknown suffix never matches an any-suffix
pattern.

A pattern that cannot be understood never matches; protection stays on.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional, Union

import tldextract

from linkscrub.core.models import RequestContext, WhitelistEntry
from linkscrub.engine.urltools import normalize_host, split_absolute
from linkscrub.core.exceptions import MalformedURLError


logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*$")

# Bundled Public Suffix List snapshot, private section included (github.io, ...); never fetched
_PSL = tldextract.TLDExtract(suffix_list_urls=(), include_psl_private_domains=True)


@dataclass(frozen=True)
class HostPattern:
    """Parsed whitelist pattern."""
    labels: tuple[str, ...]
    scheme: Optional[str] = None        # None or "*" means any scheme
    any_tld: bool = False
    subdomains_only: bool = False

    def matches(self, scheme: str, host: str) -> bool:
        if self.scheme not in (None, "*") and scheme != self.scheme:
            return False

        if not self.any_tld:
            host_labels = tuple(host.split("."))
            size = len(self.labels)
            return host_labels[-size:] == self.labels and len(host_labels) >= size

        suffix = public_suffix(host)
        if not suffix or not host.endswith("." + suffix):
            return False
        before_suffix = host[:-len(suffix) - 1]
        base = ".".join(self.labels)

        if self.subdomains_only:
            return before_suffix.endswith("." + base)
        return before_suffix == base or before_suffix.endswith("." + base)


@lru_cache(maxsize=4096)
def public_suffix(host: str) -> str:
    """Public suffix of a host per the bundled PSL snapshot; empty if unknown."""
    return _PSL(host).suffix


def _to_ascii(host: str) -> str:
    if host.isascii():
        return host
    return host.encode("idna").decode("ascii")


def parse_pattern(pattern: str) -> HostPattern:
    """Parse a whitelist pattern.

    Raises:
        ValueError: If the pattern is not a valid host pattern
    """
    raw = str(pattern or "").strip().lower()
    if not raw:
        raise ValueError("empty pattern")

    scheme = None
    if "://" in raw:
        scheme, raw = raw.split("://", 1)
        if scheme != "*" and not _SCHEME_RE.match(scheme):
            raise ValueError(f"invalid scheme {scheme!r}")

    if raw.startswith("||"):
        raw = raw[2:]
        if raw.endswith("^"):
            raw = raw[:-1]

    raw = raw.split("/", 1)[0]
    if raw.endswith("."):
        raw = raw[:-1]

    subdomains_only = False
    if raw.startswith("*."):
        raw = raw[2:]
        subdomains_only = True

    any_tld = raw.endswith(".*")
    if any_tld:
        raw = raw[:-2]
    else:
        # "*.example.com" covers the root domain too
        subdomains_only = False

    if not raw:
        raise ValueError("pattern has no host")

    try:
        labels = tuple(_to_ascii(raw).split("."))
    except UnicodeError as e:
        raise ValueError(f"invalid host: {e}") from e

    for label in labels:
        if not _LABEL_RE.match(label):
            raise ValueError(f"invalid host label {label!r}")

    return HostPattern(labels=labels, scheme=scheme, any_tld=any_tld, subdomains_only=subdomains_only)


def is_valid_pattern(pattern: str) -> bool:
    try:
        parse_pattern(pattern)
    except ValueError:
        return False
    return True


class Whitelist:
    """Compiled, immutable whitelist.

    Built once per whitelist change; matching is a pure function of the
    entries it was built from.
    """

    def __init__(self, entries: Iterable[Union[WhitelistEntry, str]] = ()):
        self.entries: tuple[WhitelistEntry, ...] = tuple(
            e if isinstance(e, WhitelistEntry) else WhitelistEntry(pattern=e) for e in entries
        )
        self.invalid: list[str] = []
        self._patterns: list[HostPattern] = []

        for entry in self.entries:
            if not entry.enabled:
                continue
            try:
                self._patterns.append(parse_pattern(entry.pattern))
            except ValueError as e:
                logger.warning(f"Ignoring whitelist pattern {entry.pattern!r}: {e}")
                self.invalid.append(entry.pattern)

    def __len__(self) -> int:
        return len(self.entries)

    def matches_url(self, url: str) -> bool:
        """Check a single URL against the whitelist."""
        if not self._patterns:
            return False
        try:
            parsed = split_absolute(url)
        except MalformedURLError:
            return False
        host = normalize_host(parsed.hostname)
        if not host:
            return False
        try:
            host = _to_ascii(host)
        except UnicodeError:
            return False
        scheme = parsed.scheme.lower()
        return any(p.matches(scheme, host) for p in self._patterns)

    def is_whitelisted(self, url: str, request_context: Optional[RequestContext] = None) -> bool:
        """Check a URL and the URLs of the page context it came from."""
        if not self._patterns:
            return False
        if self.matches_url(url):
            return True
        if request_context is None:
            return False
        return any(self.matches_url(context_url) for context_url in request_context.context_urls)


def whitelist_stats(patterns: Iterable[str]) -> dict[str, int]:
    """Count total, wildcard and exact whitelist patterns."""
    patterns = list(patterns)
    wildcard = sum(1 for p in patterns if p.startswith("*.") or p.endswith(".*"))
    return {
        "total": len(patterns),
        "exact": len(patterns) - wildcard,
        "wildcard": wildcard,
    }
