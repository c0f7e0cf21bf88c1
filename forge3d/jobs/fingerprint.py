"""Content fingerprints used as cache and deduplication keys."""

from __future__ import annotations
import hashlib
import json
import re
import unicodedata
from typing import Optional, Union

from .types import GenerationOptions, InputKind

_WHITESPACE = re.compile(r"\s+")


def normalize_content(kind: InputKind, content: str) -> str:
    """Canonical form of an input: same text or same image reference, same key."""
    if kind is InputKind.TEXT:
        text = unicodedata.normalize("NFC", content)
        return _WHITESPACE.sub(" ", text).strip()
    return content.strip()


def fingerprint(
    kind: Union[InputKind, str], content: str, options: Optional[GenerationOptions] = None
) -> str:
    """SHA-256 over ``"<kind>:<normalized content>"`` plus any set options.

    The kind prefix keeps a prompt and an image reference with the same raw
    text from colliding. Options are appended as sorted JSON so two requests
    differing only in output format never share a key.
    """
    kind = InputKind(kind)
    canonical = f"{kind.value}:{normalize_content(kind, content)}"
    if options is not None:
        opts = options.normalized().to_dict()
        if opts:
            canonical += "|" + json.dumps(opts, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
