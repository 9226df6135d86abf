"""
Typed records shared by the directory snapshot, the platform listings and the reconcilers.

Directory records are built once per run from the LDAP snapshot. Platform records are
parsed from the raw JSON objects of a listing page; a record that lacks a required field
raises RecordValidationError so the listing loop can log and skip it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

from gitlab_ldap_sync.errors import RecordValidationError


class UserState(Enum):
    """Platform account state as far as reconciliation cares."""
    ACTIVE = 'active'
    BLOCKED = 'blocked'
    LDAP_BLOCKED = 'ldap_blocked'
    BOT = 'bot'


class MemberReference(Enum):
    """How a directory group refers to its members."""
    LOGIN = 'login'
    DN = 'dn'


@dataclass(frozen=True)
class SimulatedId:
    """Placeholder identifier for an entity that a dry run pretended to create."""
    tag: str

    def __str__(self) -> str:
        return f"dry:{self.tag}"


# Real platform ids are positive integers; anything produced by a dry run is a SimulatedId.
PlatformId = Union[int, SimulatedId]


def is_simulated(platform_id: PlatformId) -> bool:
    return isinstance(platform_id, SimulatedId)


def canonical(name: str) -> str:
    """Lookup key used for every case-insensitive name comparison."""
    return name.strip().lower()


@dataclass(frozen=True)
class DirectoryUser:
    username: str
    external_id: str
    match_key: str
    full_name: str
    email: str
    is_admin: bool = False
    is_external: bool = False

    @property
    def key(self) -> str:
        return canonical(self.username)


@dataclass(frozen=True)
class DirectoryGroup:
    name: str
    normalized_name: str
    normalized_path: str
    members: Tuple[str, ...] = ()
    members_grant_admin: bool = False
    members_grant_external: bool = False

    @property
    def key(self) -> str:
        return canonical(self.normalized_name)

    @property
    def member_keys(self) -> FrozenSet[str]:
        return frozenset(canonical(member) for member in self.members)

    def has_member(self, username: str) -> bool:
        return canonical(username) in self.member_keys


def _required_id(record: Dict[str, Any], field_name: str = 'id') -> int:
    if field_name not in record or record[field_name] is None:
        raise RecordValidationError(f"Missing {field_name}.")
    try:
        value = int(record[field_name])
    except (TypeError, ValueError):
        raise RecordValidationError(f"Invalid {field_name} {record[field_name]!r}.")
    if value < 1:
        raise RecordValidationError(f"Empty {field_name}.")
    return value


def _optional_level(record: Dict[str, Any], field_name: str = 'access_level') -> int:
    if record.get(field_name) is None:
        return 0
    try:
        return int(record[field_name])
    except (TypeError, ValueError):
        raise RecordValidationError(f"Invalid {field_name} {record[field_name]!r}.")


def _required_text(record: Dict[str, Any], field_name: str) -> str:
    if field_name not in record or record[field_name] is None:
        raise RecordValidationError(f"Missing {field_name}.")
    value = str(record[field_name]).strip()
    if not value:
        raise RecordValidationError(f"Empty {field_name}.")
    return value


_STATE_MAP = {
    'active': UserState.ACTIVE,
    'blocked': UserState.BLOCKED,
    'ldap_blocked': UserState.LDAP_BLOCKED,
}


@dataclass(frozen=True)
class PlatformUser:
    id: int
    username: str
    state: UserState
    raw_state: str = 'active'

    @property
    def key(self) -> str:
        return canonical(self.username)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'PlatformUser':
        if not isinstance(record, dict):
            raise RecordValidationError("Not an object.")
        user_id = _required_id(record)
        username = _required_text(record, 'username')
        raw_state = str(record.get('state') or 'active')
        if record.get('bot') is True:
            state = UserState.BOT
        else:
            # States the engine has no policy for (deactivated, banned...) are handled like active.
            state = _STATE_MAP.get(raw_state, UserState.ACTIVE)
        return cls(id=user_id, username=username, state=state, raw_state=raw_state)


@dataclass(frozen=True)
class PlatformGroup:
    id: int
    name: str
    path: str

    @property
    def key(self) -> str:
        return canonical(self.name)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'PlatformGroup':
        if not isinstance(record, dict):
            raise RecordValidationError("Not an object.")
        return cls(
            id=_required_id(record),
            name=_required_text(record, 'name'),
            path=_required_text(record, 'path'),
        )


@dataclass(frozen=True)
class PlatformMembership:
    group_id: PlatformId
    user_id: int
    username: str
    access_level: int = 0

    @property
    def key(self) -> str:
        return canonical(self.username)

    @classmethod
    def from_record(cls, group_id: PlatformId, record: Dict[str, Any]) -> 'PlatformMembership':
        if not isinstance(record, dict):
            raise RecordValidationError("Not an object.")
        return cls(
            group_id=group_id,
            user_id=_required_id(record),
            username=_required_text(record, 'username'),
            access_level=_optional_level(record),
        )


def _sorted_by_value(mapping: Dict[Any, str]) -> Dict[Any, str]:
    return dict(sorted(mapping.items(), key=lambda item: (canonical(item[1]), str(item[0]))))


@dataclass
class ClassificationResult:
    """
    Partition of platform and directory entities.

    ``found`` holds every accepted platform entity keyed by platform id, ``to_create`` the
    directory-only entities keyed by directory key, ``to_retire`` the platform-only entities
    and ``to_update`` the entities present on both sides, both keyed by platform id.
    """
    found: Dict[PlatformId, str] = field(default_factory=dict)
    to_create: Dict[str, str] = field(default_factory=dict)
    to_retire: Dict[PlatformId, str] = field(default_factory=dict)
    to_update: Dict[PlatformId, str] = field(default_factory=dict)

    def sort(self) -> 'ClassificationResult':
        self.found = _sorted_by_value(self.found)
        self.to_create = _sorted_by_value(self.to_create)
        self.to_retire = _sorted_by_value(self.to_retire)
        self.to_update = _sorted_by_value(self.to_update)
        return self

    def counts(self) -> Dict[str, int]:
        return {
            'found': len(self.found),
            'to_create': len(self.to_create),
            'to_retire': len(self.to_retire),
            'to_update': len(self.to_update),
        }


def _lowered(names: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(canonical(name) for name in (names or []) if name and name.strip())


@dataclass(frozen=True)
class SyncOptions:
    """Reconciliation policy for one platform instance."""
    user_names_to_ignore: FrozenSet[str] = frozenset()
    group_names_to_ignore: FrozenSet[str] = frozenset()
    create_empty_groups: bool = False
    delete_extra_groups: bool = False
    new_member_access_level: int = 30
    provider: str = 'ldapmain'
    dry_run: bool = False
    continue_on_fail: bool = False
    api_cooldown_seconds: float = 0.1

    def ignores_user(self, username: str) -> bool:
        return canonical(username) in self.user_names_to_ignore

    def ignores_group(self, name: str) -> bool:
        return canonical(name) in self.group_names_to_ignore

    @classmethod
    def from_config(cls, config: Dict[str, Any], instance_config: Dict[str, Any],
                    dry_run: bool = False, continue_on_fail: bool = False) -> 'SyncOptions':
        sync_config = config.get('sync', {})
        return cls(
            user_names_to_ignore=_lowered(sync_config.get('user_names_to_ignore')),
            group_names_to_ignore=_lowered(sync_config.get('group_names_to_ignore')),
            create_empty_groups=bool(sync_config.get('create_empty_groups', False)),
            delete_extra_groups=bool(sync_config.get('delete_extra_groups', False)),
            new_member_access_level=int(sync_config.get('new_member_access_level', 30)),
            provider=instance_config.get('ldap_server_name', 'ldapmain'),
            dry_run=dry_run,
            continue_on_fail=continue_on_fail,
            api_cooldown_seconds=int(sync_config.get('api_cooldown_ms', 100)) / 1000.0,
        )
