"""
User reconciliation.

Directory users missing from the platform are created, users present on both sides are
re-enabled when blocked and get their identity attributes pushed, and platform users
without a directory entry are blocked and demoted.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Dict, Set

from gitlab_ldap_sync.classifier import EntityClassifier
from gitlab_ldap_sync.directory import DirectorySnapshot
from gitlab_ldap_sync.errors import ConflictingStateError, EmailCollisionError
from gitlab_ldap_sync.executor import ActionExecutor
from gitlab_ldap_sync.logging_setup import NOTICE
from gitlab_ldap_sync.models import (
    ClassificationResult, DirectoryUser, PlatformId, PlatformUser, SyncOptions, UserState, canonical
)
from gitlab_ldap_sync.platforms.base import PlatformAPIBase
from gitlab_ldap_sync.protected import DEFAULT_PROTECTED, ProtectedEntitySet

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 12
PASSWORD_ALPHABET = string.digits + string.ascii_lowercase + string.ascii_uppercase


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


@dataclass
class UserSyncResult:
    classification: ClassificationResult
    created: Dict[PlatformId, str] = field(default_factory=dict)
    updated: Dict[PlatformId, str] = field(default_factory=dict)
    retired: Dict[PlatformId, str] = field(default_factory=dict)
    skipped: int = 0
    bot_ids: Set[PlatformId] = field(default_factory=set)

    def reconciled_ids(self) -> Dict[str, PlatformId]:
        """Platform id of every non-bot user found or created this run, keyed by canonical username."""
        ids = {canonical(name): user_id for user_id, name in self.classification.found.items()
               if user_id not in self.bot_ids}
        ids.update({canonical(name): user_id for user_id, name in self.created.items()})
        return ids


class UserReconciler:
    """
    Reconcile platform users against directory users.

    Args:
        platform: Platform collaborator
        executor: Choke-point for mutating calls
        options: Reconciliation policy of the instance
        protected: Built-in accounts never touched
    """

    def __init__(self, platform: PlatformAPIBase, executor: ActionExecutor, options: SyncOptions,
                 protected: ProtectedEntitySet = DEFAULT_PROTECTED):
        self.platform = platform
        self.executor = executor
        self.options = options
        self.protected = protected

    def reconcile(self, snapshot: DirectorySnapshot) -> UserSyncResult:
        classifier = EntityClassifier(
            'user', PlatformUser.from_record, lambda user: user.username,
            is_protected=self.protected.is_protected_user,
            is_ignored=self.options.ignores_user,
        )

        logger.log(NOTICE, "Finding all existing platform users...")
        found = classifier.collect(self.platform.list_users())
        result = UserSyncResult(classification=classifier.classify(found, snapshot.desired_users()))
        result.skipped += classifier.rejected
        result.bot_ids = {user_id for user_id, user in found.items() if user.state is UserState.BOT}
        logger.log(NOTICE, f"{len(result.classification.found)} platform user(s) found.")

        logger.log(NOTICE, "Creating directory users missing from the platform...")
        for key in result.classification.to_create:
            self._create(snapshot.users[key], result)
        logger.log(NOTICE, f"{len(result.created)} platform user(s) created.")

        logger.log(NOTICE, "Synchronising users between the platform and the directory...")
        for user_id in result.classification.to_update:
            self._update(found[user_id], snapshot.user(found[user_id].username), result)
        for user_id in result.classification.to_retire:
            self._retire(found[user_id], result)
        logger.log(NOTICE, f"{len(result.updated)} platform user(s) updated.")
        logger.log(NOTICE, f"{len(result.retired)} platform user(s) disabled.")

        return result

    def _attributes(self, user: DirectoryUser) -> Dict[str, Any]:
        return {
            'reset_password': False,
            'name': user.full_name,
            'extern_uid': user.external_id,
            'provider': self.options.provider,
            'email': user.email,
            'admin': user.is_admin,
            'can_create_group': user.is_admin,
            'skip_confirmation': True,
            'external': user.is_external,
        }

    def _create(self, user: DirectoryUser, result: UserSyncResult):
        logger.info(f"Creating platform user \"{user.username}\" [{user.external_id}].")
        password = generate_password()
        logger.debug(f"Password for platform user \"{user.username}\" [{user.external_id}] will be: {password}")

        attributes = self._attributes(user)
        attributes['username'] = user.username
        try:
            user_id = self.executor.run_for_id(
                f"create user \"{user.username}\"", self.platform.create_user,
                user.email, password, attributes, simulated_tag=user.external_id)
        except EmailCollisionError:
            logger.error(f"Platform user \"{user.username}\" [{user.external_id}] was not created, "
                         f"email address already used by another account.")
            if not self.options.continue_on_fail:
                raise
            result.skipped += 1
            return

        result.created[user_id] = user.username

    def _update(self, platform_user: PlatformUser, user: DirectoryUser, result: UserSyncResult):
        if platform_user.state is UserState.BOT:
            logger.info(f"Platform user #{platform_user.id} \"{platform_user.username}\" is a bot, ignoring.")
            return

        if platform_user.id in result.created:
            return

        if platform_user.state is UserState.LDAP_BLOCKED:
            error = ConflictingStateError(
                f"Platform user #{platform_user.id} \"{platform_user.username}\" is LDAP blocked, can't update.")
            logger.warning(str(error))
            result.skipped += 1
            return

        if platform_user.state is UserState.BLOCKED:
            logger.info(f"Enabling platform user #{platform_user.id} \"{platform_user.username}\".")
            self.executor.run(f"unblock user #{platform_user.id} \"{platform_user.username}\"",
                              self.platform.unblock_user, platform_user.id)

        logger.info(f"Updating platform user #{platform_user.id} \"{platform_user.username}\".")
        self.executor.run(f"update user #{platform_user.id} \"{platform_user.username}\"",
                          self.platform.update_user, platform_user.id, self._attributes(user))
        result.updated[platform_user.id] = platform_user.username

    def _retire(self, platform_user: PlatformUser, result: UserSyncResult):
        if platform_user.state is UserState.BOT:
            logger.info(f"Platform user #{platform_user.id} \"{platform_user.username}\" is a bot, ignoring.")
            return

        if platform_user.state in (UserState.BLOCKED, UserState.LDAP_BLOCKED):
            logger.debug(f"Platform user #{platform_user.id} \"{platform_user.username}\" already disabled.")
            return

        logger.warning(f"Disabling platform user #{platform_user.id} \"{platform_user.username}\".")
        self.executor.run(f"block user #{platform_user.id} \"{platform_user.username}\"",
                          self.platform.block_user, platform_user.id)
        self.executor.run(f"demote user #{platform_user.id} \"{platform_user.username}\"",
                          self.platform.update_user, platform_user.id,
                          {'admin': False, 'can_create_group': False, 'external': True})
        result.retired[platform_user.id] = platform_user.username
