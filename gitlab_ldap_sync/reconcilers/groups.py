"""
Group reconciliation.

Directory groups missing from the platform are created when they have members (or empty
groups are allowed), platform-only groups are deleted only when enabled and the group
holds no projects and no subgroups, and groups present on both sides get their path
realigned with their name.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

from gitlab_ldap_sync.classifier import EntityClassifier
from gitlab_ldap_sync.directory import DirectorySnapshot
from gitlab_ldap_sync.executor import ActionExecutor
from gitlab_ldap_sync.logging_setup import NOTICE
from gitlab_ldap_sync.models import ClassificationResult, PlatformGroup, PlatformId, SyncOptions
from gitlab_ldap_sync.naming import group_path
from gitlab_ldap_sync.platforms.base import PlatformAPIBase
from gitlab_ldap_sync.protected import DEFAULT_PROTECTED, ProtectedEntitySet

logger = logging.getLogger(__name__)


@dataclass
class GroupSyncResult:
    classification: ClassificationResult
    created: Dict[PlatformId, str] = field(default_factory=dict)
    deleted: Dict[PlatformId, str] = field(default_factory=dict)
    updated: Dict[PlatformId, str] = field(default_factory=dict)
    skipped: int = 0

    def membership_targets(self) -> Dict[PlatformId, str]:
        """Groups whose members are synchronised: found or created, minus those deleted this run."""
        targets = {group_id: name for group_id, name in self.classification.found.items()
                   if group_id not in self.deleted}
        targets.update(self.created)
        return targets


class GroupReconciler:
    """
    Reconcile platform groups against directory groups.

    Args:
        platform: Platform collaborator
        executor: Choke-point for mutating calls
        options: Reconciliation policy of the instance
        protected: Built-in groups never touched
    """

    def __init__(self, platform: PlatformAPIBase, executor: ActionExecutor, options: SyncOptions,
                 protected: ProtectedEntitySet = DEFAULT_PROTECTED):
        self.platform = platform
        self.executor = executor
        self.options = options
        self.protected = protected

    def reconcile(self, snapshot: DirectorySnapshot) -> GroupSyncResult:
        classifier = EntityClassifier(
            'group', PlatformGroup.from_record, lambda group: group.name,
            is_protected=self.protected.is_protected_group,
            is_ignored=self.options.ignores_group,
        )

        logger.log(NOTICE, "Finding all existing platform groups...")
        found = classifier.collect(self.platform.list_groups())
        result = GroupSyncResult(classification=classifier.classify(found, snapshot.desired_groups()))
        result.skipped += classifier.rejected
        logger.log(NOTICE, f"{len(result.classification.found)} platform group(s) found.")

        logger.log(NOTICE, "Creating directory groups missing from the platform...")
        for key in result.classification.to_create:
            self._create(snapshot, key, result)
        logger.log(NOTICE, f"{len(result.created)} platform group(s) created.")

        logger.log(NOTICE, "Deleting platform groups missing from the directory...")
        for group_id in result.classification.to_retire:
            self._retire(snapshot, found[group_id], result)
        logger.log(NOTICE, f"{len(result.deleted)} platform group(s) deleted.")

        logger.log(NOTICE, "Synchronising groups between the platform and the directory...")
        for group_id in result.classification.to_update:
            self._update(found[group_id], result)
        logger.log(NOTICE, f"{len(result.updated)} platform group(s) updated.")

        return result

    def _create(self, snapshot: DirectorySnapshot, key: str, result: GroupSyncResult):
        group = snapshot.groups[key]
        if not group.members and not self.options.create_empty_groups:
            logger.warning(f"Not creating platform group \"{group.normalized_name}\" [{group.normalized_path}]: "
                           f"No members in directory group, and create_empty_groups is disabled.")
            return

        logger.info(f"Creating platform group \"{group.normalized_name}\" [{group.normalized_path}].")
        group_id = self.executor.run_for_id(
            f"create group \"{group.normalized_name}\" [{group.normalized_path}]",
            self.platform.create_group, group.normalized_name, group.normalized_path,
            simulated_tag=group.normalized_path)
        result.created[group_id] = group.normalized_name

    def _retire(self, snapshot: DirectorySnapshot, group: PlatformGroup, result: GroupSyncResult):
        directory_group = snapshot.group(group.name)
        member_count = len(directory_group.members) if directory_group else 0

        if member_count or not self.options.delete_extra_groups:
            logger.info(f"Not deleting platform group #{group.id} \"{group.name}\" [{group.path}]: "
                        f"Has members in directory group, or delete_extra_groups is disabled.")
            return

        project_count = self.platform.group_project_count(group.id)
        if project_count:
            logger.info(f"Not deleting platform group #{group.id} \"{group.name}\" [{group.path}]: "
                        f"It contains {project_count} project(s).")
            return

        subgroup_count = self.platform.group_subgroup_count(group.id)
        if subgroup_count:
            logger.info(f"Not deleting platform group #{group.id} \"{group.name}\" [{group.path}]: "
                        f"It contains {subgroup_count} subgroup(s).")
            return

        logger.warning(f"Deleting platform group #{group.id} \"{group.name}\" [{group.path}].")
        self.executor.run(f"delete group #{group.id} \"{group.name}\"", self.platform.delete_group, group.id)
        result.deleted[group.id] = group.name

    def _update(self, group: PlatformGroup, result: GroupSyncResult):
        expected_path = group_path(group.name)
        if not expected_path or expected_path == group.path:
            logger.debug(f"Platform group #{group.id} \"{group.name}\" [{group.path}] is up to date.")
            return

        logger.info(f"Updating platform group #{group.id} \"{group.name}\" path [{group.path}] -> [{expected_path}].")
        self.executor.run(f"update group #{group.id} \"{group.name}\"",
                          self.platform.update_group, group.id, {'path': expected_path})
        result.updated[group.id] = group.name
