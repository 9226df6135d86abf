"""
Main orchestrator for GitLab LDAP Sync.

This module reads the directory once, then reconciles users, groups and group
memberships of every selected platform instance, one instance after another. The first
fatal error stops the run.
"""

import sys
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, List, Optional, Type

from gitlab_ldap_sync.config import load_config, ConfigurationError
from gitlab_ldap_sync.directory import DirectorySnapshot, DirectorySnapshotBuilder
from gitlab_ldap_sync.errors import MutationError, SyncError
from gitlab_ldap_sync.executor import ActionExecutor
from gitlab_ldap_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from gitlab_ldap_sync.logging_setup import NOTICE, setup_logging
from gitlab_ldap_sync.models import SyncOptions
from gitlab_ldap_sync.notifications import send_failure_notification, send_success_summary
from gitlab_ldap_sync.platforms.base import (
    PlatformAPIBase, PlatformAPIError, PlatformAuthenticationError, PlatformTransientError
)
from gitlab_ldap_sync.protected import DEFAULT_PROTECTED, ProtectedEntitySet
from gitlab_ldap_sync.reconcilers import GroupReconciler, MembershipReconciler, UserReconciler

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_SYNC_ERROR = 4


def reconcile_instance(platform: PlatformAPIBase, snapshot: DirectorySnapshot, options: SyncOptions,
                       executor: Optional[ActionExecutor] = None,
                       protected: ProtectedEntitySet = DEFAULT_PROTECTED) -> Dict[str, Any]:
    """
    Reconcile one platform instance against the directory snapshot.

    Users run first, then groups, then memberships over the post-reconciliation ids.

    Args:
        platform: Authenticated platform client
        snapshot: Directory snapshot shared by all instances
        options: Reconciliation policy of the instance
        executor: Choke-point for mutating calls, built from the options when omitted
        protected: Built-in accounts and groups

    Returns:
        Statistics of the instance

    Raises:
        MutationError: If a mutating call fails and the failure is not skippable
        PlatformAPIError: If a listing fails
    """
    if executor is None:
        executor = ActionExecutor(dry_run=options.dry_run, cooldown_seconds=options.api_cooldown_seconds)

    users = UserReconciler(platform, executor, options, protected).reconcile(snapshot)
    groups = GroupReconciler(platform, executor, options, protected).reconcile(snapshot)
    memberships = MembershipReconciler(platform, executor, options, protected).reconcile(snapshot, users, groups)

    user_counts = users.classification.counts()
    group_counts = groups.classification.counts()
    return {
        'users_found': user_counts['found'],
        'users_to_create': user_counts['to_create'],
        'users_to_retire': user_counts['to_retire'],
        'users_to_update': user_counts['to_update'],
        'users_created': len(users.created),
        'users_disabled': len(users.retired),
        'users_updated': len(users.updated),
        'groups_found': group_counts['found'],
        'groups_to_create': group_counts['to_create'],
        'groups_to_retire': group_counts['to_retire'],
        'groups_to_update': group_counts['to_update'],
        'groups_created': len(groups.created),
        'groups_deleted': len(groups.deleted),
        'groups_updated': len(groups.updated),
        'groups_member_synced': memberships.groups_synced,
        'memberships_added': memberships.added_count,
        'memberships_removed': memberships.removed_count,
        'records_skipped': users.skipped + groups.skipped + memberships.skipped,
        'calls_performed': executor.performed,
        'calls_suppressed': executor.suppressed,
    }


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to GitLab reconciliation.

    Coordinates the directory read and the per-instance reconciliation, and maps fatal
    errors to process exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False,
                 continue_on_fail: bool = False, instance_name: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Log mutating calls instead of performing them
            continue_on_fail: Skip users whose e-mail address is already taken instead of aborting
            instance_name: Restrict the run to this configured instance
        """
        self.config = None
        self.ldap_client = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.continue_on_fail = continue_on_fail
        self.instance_name = instance_name

        self.sync_stats = {
            'dry_run': dry_run,
            'instances_processed': 0,
            'instances_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'instance_details': {}
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.sync_stats['start_time'] = datetime.now()
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.log(NOTICE, "Starting GitLab LDAP Sync")
            if self.dry_run:
                logger.warning("Dry run enabled: no changes will be made.")
            if self.continue_on_fail:
                logger.warning("Continue on failure enabled: users with a taken e-mail address will be skipped.")

            instances = self._select_instances()
            platform_classes = {instance['name']: self._load_platform_class(instance) for instance in instances}

            snapshot = self._read_directory()

            for instance_config in instances:
                self._process_instance(instance_config, platform_classes[instance_config['name']], snapshot)
                self.sync_stats['instances_processed'] += 1

            self._finish()
            self._log_sync_summary()
            self._send_success_notification()
            logger.log(NOTICE, "Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except (LDAPConnectionError, LDAPQueryError) as e:
            logger.critical(f"LDAP error: {e}")
            self._send_failure_notification("LDAP Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except (PlatformAuthenticationError, PlatformTransientError) as e:
            self.sync_stats['instances_failed'] += 1
            logger.critical(f"Platform connection error: {e}")
            self._send_failure_notification("Platform Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except (MutationError, PlatformAPIError, SyncError) as e:
            self.sync_stats['instances_failed'] += 1
            logger.critical(f"Reconciliation failed: {e}")
            self._send_failure_notification("Reconciliation Failed", str(e))
            return EXIT_SYNC_ERROR
        except Exception as e:
            logger.critical(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_SYNC_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _select_instances(self) -> List[Dict[str, Any]]:
        """
        Pick the instances of this run.

        Raises:
            ConfigurationError: If the requested instance is not configured
        """
        instances = self.config['instances']
        if not self.instance_name:
            return instances

        selected = [i for i in instances if str(i['name']).lower() == self.instance_name.lower()]
        if not selected:
            names = ', '.join(str(i['name']) for i in instances)
            raise ConfigurationError(f"Unknown instance '{self.instance_name}' (configured: {names})")
        return selected

    def _load_platform_class(self, instance_config: Dict[str, Any]) -> Type[PlatformAPIBase]:
        """
        Find the PlatformAPIBase subclass of the instance's platform module.

        Raises:
            ConfigurationError: If the module cannot be imported or holds no platform class
        """
        module_name = instance_config['module']
        try:
            platform_module = importlib.import_module(f"gitlab_ldap_sync.platforms.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import platform module {module_name}: {e}")

        for attr_name in dir(platform_module):
            attr = getattr(platform_module, attr_name)
            if isinstance(attr, type) and issubclass(attr, PlatformAPIBase) and attr is not PlatformAPIBase:
                return attr

        raise ConfigurationError(f"No PlatformAPIBase subclass found in module {module_name}")

    def _read_directory(self) -> DirectorySnapshot:
        """Connect to LDAP, read users and groups, and build the snapshot."""
        ldap_config = self.config['ldap']
        self.ldap_client = LDAPClient(ldap_config, self.config.get('error_handling', {}))
        self.ldap_client.connect()
        logger.log(NOTICE, "LDAP connection established.")

        try:
            user_entries = self.ldap_client.search_users()
            group_entries = self.ldap_client.search_groups()
        finally:
            self.ldap_client.disconnect()
            self.ldap_client = None
            logger.log(NOTICE, "LDAP connection closed.")

        builder = DirectorySnapshotBuilder(ldap_config['queries'], self.config.get('sync', {}))
        return builder.build(user_entries, group_entries)

    def _process_instance(self, instance_config: Dict[str, Any], platform_class: Type[PlatformAPIBase],
                          snapshot: DirectorySnapshot):
        """Reconcile a single platform instance."""
        instance_name = instance_config['name']
        start_time = datetime.now()
        logger.log(NOTICE, f"Processing instance: {instance_name}")

        options = SyncOptions.from_config(self.config, instance_config, self.dry_run, self.continue_on_fail)
        try:
            with platform_class(instance_config, self.config.get('error_handling', {})) as platform:
                platform.authenticate()
                stats = reconcile_instance(platform, snapshot, options)
        finally:
            runtime = (datetime.now() - start_time).total_seconds()
            logger.log(NOTICE, f"Completed instance: {instance_name} in {runtime:.2f} seconds")

        stats['runtime_seconds'] = round(runtime, 2)
        self.sync_stats['instance_details'][instance_name] = stats

    def _finish(self):
        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        if not self.config:
            return
        sent = send_failure_notification(title, error_message, self.config.get('notifications', {}),
                                         {'dry_run': self.dry_run, 'instance': self.instance_name or 'all'})
        if not sent:
            logger.debug("Failure notification not sent")

    def _send_success_notification(self):
        """Send email notification for successful sync."""
        send_success_summary(self.sync_stats, self.config.get('notifications', {}))

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.log(NOTICE, "=== Sync Summary ===")
        logger.log(NOTICE, f"Total runtime: {runtime_str}")
        logger.log(NOTICE, f"Instances processed: {stats['instances_processed']}")

        for instance_name, instance_stats in stats['instance_details'].items():
            logger.info(f"--- {instance_name} Details ---")
            logger.info(f"  Users: {instance_stats['users_found']} found, {instance_stats['users_created']} created, "
                        f"{instance_stats['users_updated']} updated, {instance_stats['users_disabled']} disabled")
            logger.info(f"  Groups: {instance_stats['groups_found']} found, {instance_stats['groups_created']} created, "
                        f"{instance_stats['groups_updated']} updated, {instance_stats['groups_deleted']} deleted")
            logger.info(f"  Memberships: {instance_stats['memberships_added']} added, "
                        f"{instance_stats['memberships_removed']} removed")
            logger.info(f"  Records skipped: {instance_stats['records_skipped']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory bind and platform authentication.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            instances = self._select_instances()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'], self.config.get('error_handling', {}))
            test_client.connect(max_retries=0)
            test_client.disconnect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        instance_checks = {}
        for instance_config in instances:
            instance_name = instance_config['name']
            try:
                platform_class = self._load_platform_class(instance_config)
                with platform_class(instance_config, {'max_retries': 0}) as platform:
                    platform.authenticate()
                instance_checks[instance_name] = {
                    'status': 'pass',
                    'message': 'Authentication successful'
                }
            except (ConfigurationError, PlatformAPIError) as e:
                instance_checks[instance_name] = {
                    'status': 'fail',
                    'message': f'Authentication failed: {e}'
                }
                health_status['status'] = 'unhealthy'
        health_status['checks']['instances'] = instance_checks

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(
        description='Reconcile GitLab users, groups and group memberships with an LDAP directory')
    parser.add_argument('instance', nargs='?', help='Only synchronise this configured instance')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', '-d', action='store_true',
                        help='Log intended changes without performing them')
    parser.add_argument('--continue-on-fail', action='store_true',
                        help='Skip users whose e-mail address is already taken instead of aborting')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(
        config_path=args.config,
        dry_run=args.dry_run,
        continue_on_fail=args.continue_on_fail,
        instance_name=args.instance
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
