"""
Name normalization for directory and platform identifiers.

Three independent policies turn a raw directory name into a platform-safe one. Each
transliterates to ASCII, collapses every run of disallowed characters into a single
separator, trims leading and trailing separators and optionally lower-cases the result.
"""

import logging
import re
from typing import Pattern

import unidecode

logger = logging.getLogger(__name__)


class NamePolicy:
    """A single transliteration policy."""

    def __init__(self, name: str, disallowed: str, separator: str, lowercase: bool = False):
        self.name = name
        self.separator = separator
        self.lowercase = lowercase
        self._disallowed: Pattern = re.compile(disallowed)

    def __call__(self, raw: str) -> str:
        return self.normalize(raw)

    def normalize(self, raw: str) -> str:
        """
        Normalize a raw name.

        Args:
            raw: Name as read from the directory

        Returns:
            Normalized name, possibly empty when nothing survives
        """
        text = unidecode.unidecode(raw or '')
        text = self._disallowed.sub(self.separator, text)
        text = text.strip(self.separator)
        if self.lowercase:
            text = text.lower()
        return text

    def __repr__(self) -> str:
        return f"NamePolicy({self.name!r})"


directory_username = NamePolicy('directory-username', r'[^A-Za-z0-9_.]+', ',')

platform_display_name = NamePolicy('platform-display-name', r'[^A-Za-z0-9]+', ' ')

platform_path = NamePolicy('platform-path', r'[^A-Za-z0-9]+', '-', lowercase=True)


def normalize_username(raw: str) -> str:
    """
    Apply the directory-username policy, logging a compatibility rewrite when it changes the name.

    Args:
        raw: Raw value of the directory's unique user attribute

    Returns:
        Canonical username
    """
    normalized = directory_username(raw)
    if normalized != raw:
        logger.warning(f"User name \"{raw}\" has been rewritten to \"{normalized}\" for compatibility.")
    return normalized


def group_display_name(raw: str) -> str:
    return platform_display_name(raw)


def group_path(raw: str) -> str:
    return platform_path(raw)
