"""
Generic set reconciliation between platform listings and directory state.

The classifier is used for users, groups and per-group memberships. Names are compared
case-insensitively through normalized-key maps built once per classification.
"""

import logging
from typing import Any, Callable, Dict, Generic, Iterable, Optional, Set, TypeVar

from gitlab_ldap_sync.errors import DuplicateEntityError, RecordValidationError
from gitlab_ldap_sync.models import ClassificationResult, PlatformId, canonical

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _never(name: str) -> bool:
    return False


class EntityClassifier(Generic[T]):
    """
    Partition platform entities against directory entities.

    Args:
        kind: Entity label used in log lines ("user", "group", "member")
        parse: Turns one raw listing record into a typed entity, raising RecordValidationError
        name_of: Returns the comparable name of a parsed entity
        is_protected: Predicate for built-in entities, checked first
        is_ignored: Predicate for ignore-listed entities
        is_excluded: Predicate for parsed entities that are accepted for duplicate detection
            but kept out of the result (bot accounts in member listings)
    """

    def __init__(self, kind: str, parse: Callable[[Any], T], name_of: Callable[[T], str],
                 is_protected: Optional[Callable[[str], bool]] = None,
                 is_ignored: Optional[Callable[[str], bool]] = None,
                 is_excluded: Optional[Callable[[T], bool]] = None):
        self.kind = kind
        self.parse = parse
        self.name_of = name_of
        self.is_protected = is_protected or _never
        self.is_ignored = is_ignored or _never
        self.is_excluded = is_excluded
        self.rejected = 0

    def collect(self, records: Iterable[Any]) -> Dict[PlatformId, T]:
        """
        Build the accepted platform entities from a listing.

        Protected and ignore-listed entities are skipped; malformed records and records whose id
        or name collides with an already accepted one are logged and dropped, first one wins.

        Args:
            records: Raw listing records, typically a page iterator

        Returns:
            Accepted entities keyed by platform id, in listing order
        """
        accepted: Dict[PlatformId, T] = {}
        claimed_names: Dict[str, PlatformId] = {}
        claimed_ids: Set[PlatformId] = set()

        for index, record in enumerate(records, start=1):
            try:
                entity = self.parse(record)
            except RecordValidationError as e:
                logger.error(f"Platform {self.kind} #{index}: {e}")
                self.rejected += 1
                continue

            entity_id = getattr(entity, 'id', None)
            if entity_id is None:
                entity_id = getattr(entity, 'user_id')
            name = self.name_of(entity)

            if self.is_protected(name):
                logger.info(f"Platform {self.kind} #{entity_id} \"{name}\" is built-in, skipping.")
                continue

            if self.is_ignored(name):
                logger.info(f"Platform {self.kind} #{entity_id} \"{name}\" is ignore-listed, skipping.")
                continue

            try:
                self._claim(entity_id, name, claimed_names, claimed_ids)
            except DuplicateEntityError as e:
                logger.warning(f"Platform {self.kind} #{index}: {e}")
                self.rejected += 1
                continue

            claimed_names[canonical(name)] = entity_id
            claimed_ids.add(entity_id)
            if self.is_excluded is not None and self.is_excluded(entity):
                continue
            accepted[entity_id] = entity

        return accepted

    def _claim(self, entity_id: PlatformId, name: str, claimed_names: Dict[str, PlatformId],
               claimed_ids: Set[PlatformId]) -> None:
        if entity_id in claimed_ids:
            raise DuplicateEntityError(f"Duplicate {self.kind} id #{entity_id} \"{name}\".")
        key = canonical(name)
        if key in claimed_names:
            raise DuplicateEntityError(
                f"Duplicate {self.kind} name \"{name}\" (already claimed by #{claimed_names[key]}).")

    def classify(self, found: Dict[PlatformId, T], desired: Dict[str, str]) -> ClassificationResult:
        """
        Classify accepted platform entities against the desired directory entities.

        Args:
            found: Accepted platform entities keyed by platform id
            desired: Directory names keyed by canonical key

        Returns:
            Sorted ClassificationResult
        """
        result = ClassificationResult()
        found_keys: Dict[str, PlatformId] = {}

        for entity_id, entity in found.items():
            name = self.name_of(entity)
            result.found[entity_id] = name
            found_keys[canonical(name)] = entity_id

        for key, name in desired.items():
            if key in found_keys:
                continue
            if self.is_protected(name) or self.is_ignored(name):
                continue
            result.to_create[key] = name

        for entity_id, name in result.found.items():
            key = canonical(name)
            if key in desired and key not in result.to_create:
                result.to_update[entity_id] = name
            else:
                result.to_retire[entity_id] = name

        return result.sort()
