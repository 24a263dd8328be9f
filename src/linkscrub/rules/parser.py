"""Rule document parsing and pattern validation.

A rule document maps provider ids to provider records::

    {
      "providers": {
        "google": {
          "urlPattern": "^https?://(?:[a-z0-9-]+\\.)*?google\\.com",
          "rules": ["ved", "ei"],
          "redirections": ["^https?://www\\.google\\.com/url\\?.*?q=([^&]*)"]
        }
      },
      "metadata": {"name": "example", "version": "1"}
    }

The ``providers`` wrapper is optional. Unknown fields are ignored, missing
rule groups are empty, and a single string where a list is expected is
treated as a one-element list.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from linkscrub.core.constants import PATTERN_FIELDS
from linkscrub.core.exceptions import InvalidPatternError, RuleSourceError
from linkscrub.core.models import Provider


logger = logging.getLogger(__name__)

_LIST_FIELDS = {
    "rules": "rules",
    "rawRules": "raw_rules",
    "referralMarketing": "referral_marketing",
    "exceptions": "exceptions",
    "redirections": "redirections",
    "methods": "methods",
    "resourceTypes": "resource_types",
}

RECORD_FIELDS = frozenset({"urlPattern", "enabled", "completeProvider", "forceRedirection", *_LIST_FIELDS})


@dataclass
class RuleDocument:
    """Parsed rule document."""
    providers: list[Provider] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [p.id for p in self.providers]


def _as_string_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    items = (item.strip() for item in value if isinstance(item, str))
    return tuple(item for item in items if item)


def parse_provider(provider_id: str, record: Any) -> Provider:
    """Build a Provider from a rule-source record.

    Raises:
        RuleSourceError: If the record is not a mapping or lacks a usable
            ``urlPattern``.
    """
    if not isinstance(record, dict):
        raise RuleSourceError(f"Provider '{provider_id}' must be a mapping")

    url_pattern = record.get("urlPattern")
    if not isinstance(url_pattern, str) or not url_pattern.strip():
        raise RuleSourceError(f"Provider '{provider_id}' is missing 'urlPattern'")

    groups = {attr: _as_string_list(record.get(key, [])) for key, attr in _LIST_FIELDS.items()}

    return Provider(
        id=provider_id,
        url_pattern=url_pattern.strip(),
        enabled=record.get("enabled", True) is not False,
        complete_provider=record.get("completeProvider", False) is True,
        force_redirection=record.get("forceRedirection", False) is True,
        **groups,
    )


def parse_rule_document(data: Any) -> RuleDocument:
    """Parse a decoded rule document.

    Records that cannot be turned into providers are skipped and listed in
    ``RuleDocument.skipped`` so one bad entry does not discard the rest.

    Raises:
        RuleSourceError: If the document is not a mapping of providers.
    """
    if not isinstance(data, dict):
        raise RuleSourceError("Rule document must be a mapping")

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    providers_data = data["providers"] if "providers" in data else {
        k: v for k, v in data.items() if k != "metadata"
    }
    if not isinstance(providers_data, dict):
        raise RuleSourceError("'providers' must be a mapping of provider id to record")

    document = RuleDocument(metadata=dict(metadata))
    for provider_id, record in providers_data.items():
        try:
            document.providers.append(parse_provider(str(provider_id), record))
        except RuleSourceError as e:
            logger.warning(f"Skipping provider: {e}")
            document.skipped.append(str(provider_id))

    return document


def parse_rule_text(text: str) -> RuleDocument:
    """Parse rule document text; JSON is tried first, then YAML."""
    if not text or not text.strip():
        raise RuleSourceError("Rule document is empty")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise RuleSourceError(f"Failed to parse rule document: {e}") from e
    return parse_rule_document(data)


def load_rule_file(path: Path | str) -> RuleDocument:
    """Load a rule document from a JSON or YAML file.

    Raises:
        RuleSourceError: If the file is missing, unreadable or invalid
    """
    rule_path = Path(path)
    if not rule_path.exists():
        raise RuleSourceError(f"Rule file not found: {rule_path}")
    try:
        text = rule_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RuleSourceError(f"Failed to read rule file: {e}") from e
    return parse_rule_text(text)


def dump_providers(providers: Iterable[Provider], metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Serialize providers back into the rule document format."""
    document: dict[str, Any] = {"providers": {p.id: p.to_dict() for p in providers}}
    if metadata:
        document["metadata"] = dict(metadata)
    return document


# ============================================================================
# Pattern Compilation
# ============================================================================

def _split_alternatives(pattern: str) -> list[str]:
    """Split a regex at its top-level ``|``; groups and classes stay intact."""
    parts = []
    depth = 0
    start = 0
    class_start = -1
    escaped = False
    for i, ch in enumerate(pattern):
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif class_start >= 0:
            # "]" right after "[" or "[^" is a literal
            if ch == "]" and i > class_start + 1 and pattern[class_start + 1:i] != "^":
                class_start = -1
        elif ch == "[":
            class_start = i
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "|" and depth == 0:
            parts.append(pattern[start:i])
            start = i + 1
    parts.append(pattern[start:])
    return parts


def _ends_with_anchor(pattern: str) -> bool:
    if not pattern.endswith("$"):
        return False
    backslashes = len(pattern[:-1]) - len(pattern[:-1].rstrip("\\"))
    return backslashes % 2 == 0


def _whole_name_source(pattern: str) -> str:
    # Explicit anchors mark a prefix/suffix rule ("^utm_" strips utm_source),
    # per alternative: in "gclid|^utm_" only the second one is a prefix
    alternatives = []
    for alternative in _split_alternatives(pattern):
        head = "" if alternative.startswith("^") else ".*"
        tail = "" if _ends_with_anchor(alternative) else ".*"
        if head and tail:
            head = tail = ""
        alternatives.append(f"{head}(?:{alternative}){tail}")
    if len(alternatives) == 1:
        return alternatives[0]
    return "(?:" + "|".join(alternatives) + ")"


def compile_pattern(pattern: str, *, whole: bool = False) -> re.Pattern:
    """Compile a rule pattern case-insensitively.

    Args:
        pattern: Regular expression source
        whole: Compile for use with ``fullmatch`` against a parameter name.
            Unanchored patterns must match the entire name; a pattern with
            a leading ``^`` or trailing ``$`` matches a prefix or suffix.

    Raises:
        InvalidPatternError: If the pattern does not compile
    """
    source = _whole_name_source(pattern) if whole else pattern
    try:
        return re.compile(source, re.IGNORECASE)
    except (re.error, OverflowError, RecursionError) as e:
        raise InvalidPatternError(pattern, str(e)) from e


def validate_provider(provider: Provider) -> dict[str, list[str]]:
    """Compile every regex field of a provider.

    Returns:
        Mapping of rule-source field name to error messages; empty when
        every pattern compiles.
    """
    errors: dict[str, list[str]] = {}
    values = {
        "urlPattern": (provider.url_pattern,),
        "rules": provider.rules,
        "rawRules": provider.raw_rules,
        "referralMarketing": provider.referral_marketing,
        "exceptions": provider.exceptions,
        "redirections": provider.redirections,
    }
    for field_name in PATTERN_FIELDS:
        for pattern in values[field_name]:
            try:
                compiled = compile_pattern(pattern, whole=field_name in ("rules", "referralMarketing"))
            except InvalidPatternError as e:
                errors.setdefault(field_name, []).append(f"{pattern!r}: {e.reason}")
                continue
            if field_name == "redirections" and compiled.groups < 1:
                errors.setdefault(field_name, []).append(
                    f"{pattern!r}: redirection needs a capture group"
                )
    return errors
