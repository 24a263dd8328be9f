class LinkScrubError(Exception):
    pass

class ConfigError(LinkScrubError):
    pass

class RuleSourceError(LinkScrubError):
    """A rule document could not be read or parsed."""
    pass

class SourceUnavailableError(RuleSourceError):
    """Remote rule source fetch failed, timed out or failed verification."""
    pass

class InvalidPatternError(LinkScrubError):
    """A stored regular expression failed to compile."""

    def __init__(self, pattern: str, reason: str, *, provider_id: str | None = None, field: str | None = None) -> None:
        self.pattern = pattern
        self.reason = reason
        self.provider_id = provider_id
        self.field = field
        where = f" in {provider_id}.{field}" if provider_id and field else ""
        super().__init__(f"Invalid pattern{where} {pattern!r}: {reason}")

class MalformedURLError(LinkScrubError):
    pass

class EditorError(LinkScrubError):
    pass

class ProviderNotFoundError(EditorError):
    pass

class ProviderExistsError(EditorError):
    pass

class ImportConflictError(EditorError):
    """Conflict that cannot be resolved with the requested decision."""
    pass

class StorageError(LinkScrubError):
    pass
