"""Cache key schema.

Key format: {app}:{prefix}:{key}  (prefix is optional)

Where:
- app: application namespace, "wms" by default
- prefix: optional sub-namespace, e.g. "product:details" or "memo:high"
- key: caller-supplied logical key

Tag and lock records live outside the app namespace:
- tag:{name}      set of full cache keys carrying the tag
- lock:{resource} token of the current lock holder
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import orjson

TAG_PREFIX = "tag"
LOCK_PREFIX = "lock"

_PRIMITIVES = (str, int, float, bool, type(None))
_PLACEHOLDER = re.compile(r"\{(\d+)\}")


def _stringify(arg: Any) -> str:
    if isinstance(arg, _PRIMITIVES):
        return str(arg)
    return orjson.dumps(arg, option=orjson.OPT_SORT_KEYS).decode()


class KeyBuilder:
    """Deterministic key generator for one application namespace."""

    def __init__(self, app_prefix: str = "wms"):
        if not app_prefix or ":" in app_prefix:
            raise ValueError("app_prefix must be a non-empty string without ':'")
        self.app_prefix = app_prefix

    def build(self, key: str, prefix: str | None = None) -> str:
        """Full key for a logical key, optionally under a sub-prefix."""
        if prefix:
            return f"{self.app_prefix}:{prefix}:{key}"
        return f"{self.app_prefix}:{key}"

    def pattern(self, prefix: str | None = None) -> str:
        """Glob pattern matching every key in the namespace (or sub-prefix)."""
        if prefix:
            return f"{self.app_prefix}:{prefix}:*"
        return f"{self.app_prefix}:*"

    @staticmethod
    def tag(name: str) -> str:
        """Key for a tag's member set."""
        return f"{TAG_PREFIX}:{name}"

    @staticmethod
    def lock(resource: str) -> str:
        """Key for a distributed lock record."""
        return f"{LOCK_PREFIX}:{resource}"

    def parse(self, full_key: str, prefix: str | None = None) -> str | None:
        """Strip the namespace (and ``prefix`` if given) from a full key.

        Returns None if the key doesn't belong to this namespace.
        """
        head = f"{self.app_prefix}:{prefix}:" if prefix else f"{self.app_prefix}:"
        if not full_key.startswith(head) or len(full_key) == len(head):
            return None
        return full_key[len(head) :]

    @staticmethod
    def from_template(template: str, args: Sequence[Any]) -> str:
        """Fill positional placeholders ``{0}``, ``{1}``... with call arguments.

        Primitives are inserted with ``str()``; anything else as compact JSON
        with sorted keys so equal arguments always produce equal keys.
        Placeholders without a matching argument are left as they are.
        Substitution is a single pass, so text inserted for one argument is
        never read as another placeholder.
        """

        def fill(match: re.Match[str]) -> str:
            index = int(match.group(1))
            if index < len(args):
                return _stringify(args[index])
            return match.group(0)

        return _PLACEHOLDER.sub(fill, template)
