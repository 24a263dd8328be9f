"""Remote rule source fetching.

Remote rule documents are downloaded over https and only accepted when
their SHA-256 digest matches the pinned value or the digest published next
to them. A source that times out, fails or does not verify is reported as
unavailable; it is never retried silently.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

import httpx

from linkscrub.core.constants import DEFAULTS, DiagnosticKind
from linkscrub.core.exceptions import RuleSourceError, SourceUnavailableError
from linkscrub.core.models import Diagnostic, Provider, RemoteSource
from linkscrub.rules.parser import RuleDocument, parse_rule_text


logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[a-fA-F0-9]{64}$")


@dataclass
class FetchedSource:
    """A verified remote rule document."""
    source: RemoteSource
    document: RuleDocument
    sha256: str


@dataclass
class FetchReport:
    """Outcome of fetching a set of remote sources."""
    fetched: list[FetchedSource] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def available(self) -> dict[str, list[Provider]]:
        """Provider lists of the sources that could be fetched, by name."""
        return {f.source.name: list(f.document.providers) for f in self.fetched}

    @property
    def unavailable(self) -> list[str]:
        return [d.provider_id for d in self.diagnostics if d.provider_id]

    def merged_providers(self) -> list[Provider]:
        """Providers of all fetched sources; the first source wins per id."""
        merged: dict[str, Provider] = {}
        for fetched in self.fetched:
            for provider in fetched.document.providers:
                merged.setdefault(provider.id, provider)
        return list(merged.values())


def parse_digest(text: str) -> str:
    """Extract a SHA-256 digest from a published hash file.

    Accepts ``<hex>`` or ``<hex>  <filename>``.

    Raises:
        SourceUnavailableError: If no valid digest is present
    """
    token = text.strip().split()[0] if text.strip() else ""
    if not _SHA256_RE.match(token):
        raise SourceUnavailableError("Published hash is not a SHA-256 hex digest")
    return token.lower()


class RemoteRuleFetcher:
    """Fetches and verifies remote rule documents.

    Example:
        >>> fetcher = RemoteRuleFetcher(config.remote_sources, timeout=15)
        >>> report = await fetcher.fetch_all()
        >>> store.set_remote(report.merged_providers())
    """

    def __init__(
        self,
        sources: Iterable[RemoteSource],
        *,
        timeout: float = DEFAULTS["fetch_timeout"],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize fetcher.

        Args:
            sources: Remote sources to fetch
            timeout: Seconds allowed per source, covering both requests
            transport: Optional httpx transport (used by tests)
        """
        self.sources = list(sources)
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    @staticmethod
    def _require_https(url: str) -> None:
        if httpx.URL(url).scheme != "https":
            raise SourceUnavailableError(f"Refusing non-https rule source: {url}")

    async def _download(self, source: RemoteSource) -> FetchedSource:
        self._require_https(source.url)
        if source.hash_url:
            self._require_https(source.hash_url)

        async with self._client() as client:
            if source.sha256:
                expected = source.sha256.lower()
            elif source.hash_url:
                hash_response = await client.get(source.hash_url)
                hash_response.raise_for_status()
                expected = parse_digest(hash_response.text)
            else:
                raise SourceUnavailableError(f"No hash configured for source '{source.name}'")

            response = await client.get(source.url)
            response.raise_for_status()
            body = response.content

        actual = hashlib.sha256(body).hexdigest()
        if actual != expected:
            raise SourceUnavailableError(
                f"Hash mismatch for '{source.name}': expected {expected}, got {actual}"
            )

        try:
            document = parse_rule_text(body.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise SourceUnavailableError(f"Rule document of '{source.name}' is not UTF-8") from e
        except RuleSourceError as e:
            raise SourceUnavailableError(f"Invalid rule document from '{source.name}': {e}") from e

        return FetchedSource(source=source, document=document, sha256=actual)

    async def fetch_source(self, source: RemoteSource) -> FetchedSource:
        """Fetch and verify one source.

        Raises:
            SourceUnavailableError: On timeout, HTTP failure, hash mismatch
                or an unparsable document
        """
        try:
            return await asyncio.wait_for(self._download(source), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SourceUnavailableError(f"Timed out fetching '{source.name}'") from e
        except httpx.HTTPStatusError as e:
            raise SourceUnavailableError(
                f"HTTP {e.response.status_code} fetching '{source.name}'"
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise SourceUnavailableError(f"Failed to fetch '{source.name}': {e}") from e

    async def _fetch_or_report(self, source: RemoteSource) -> FetchedSource | Diagnostic:
        try:
            fetched = await self.fetch_source(source)
        except SourceUnavailableError as e:
            logger.warning(f"Rule source unavailable: {e}")
            return Diagnostic(
                kind=DiagnosticKind.SOURCE_UNAVAILABLE,
                message=str(e),
                provider_id=source.name,
            )
        logger.info(f"Fetched {len(fetched.document.providers)} providers from '{source.name}'")
        return fetched

    async def fetch_all(self) -> FetchReport:
        """Fetch every source concurrently.

        Cancelling the calling task cancels all pending downloads.
        """
        results = await asyncio.gather(*(self._fetch_or_report(s) for s in self.sources))
        report = FetchReport()
        for result in results:
            if isinstance(result, Diagnostic):
                report.diagnostics.append(result)
            else:
                report.fetched.append(result)
        return report
