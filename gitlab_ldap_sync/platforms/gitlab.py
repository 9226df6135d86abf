"""
GitLab API integration module.

This module implements the PlatformAPIBase interface on top of the GitLab REST API v4.
It manages users, groups and direct group memberships of a self-hosted instance.
"""

import logging
from typing import Dict, Any, Iterator

from .base import PlatformAPIBase, PlatformAPIError, PlatformAuthenticationError, EmailAlreadyTakenError

logger = logging.getLogger(__name__)


class GitLabAPI(PlatformAPIBase):
    """
    GitLab API client implementation.

    All paths are relative to ``<base_url>/api/v4``. The configured token must belong to an
    administrator, since user creation, blocking and listing of all groups require it.
    """

    API_PREFIX = '/api/v4'

    def __init__(self, config: Dict[str, Any], retry_config: Dict[str, Any] = None):
        """
        Initialize GitLab API client.

        Args:
            config: Instance configuration dictionary
            retry_config: error_handling section of the configuration
        """
        super().__init__(config, retry_config)
        logger.info(f"Initialized GitLab API client for {self.name}")

    def _api(self, path: str) -> str:
        return self.API_PREFIX + '/' + path.lstrip('/')

    def _raise_for_status(self, method: str, path: str, status: int, reason: str, payload: Any):
        """Recognise GitLab's "Email has already been taken" refusal on user creation."""
        if status in (400, 409) and 'email' in str(payload).lower() and 'taken' in str(payload).lower():
            raise EmailAlreadyTakenError(f"{method} {path}: Email has already been taken", status, payload)
        super()._raise_for_status(method, path, status, reason, payload)

    def authenticate(self) -> bool:
        """
        Check that the token is valid by fetching the current user.

        Returns:
            True if the token is accepted

        Raises:
            PlatformAuthenticationError: If the token is rejected
        """
        try:
            current_user = self.get(self._api('/user'))
        except PlatformAuthenticationError:
            raise
        except PlatformAPIError as e:
            if e.status_code == 403:
                raise PlatformAuthenticationError(f"Token rejected by {self.name}: {e}", e.status_code)
            raise

        if not isinstance(current_user, dict) or 'username' not in current_user:
            raise PlatformAuthenticationError(f"Unexpected response while authenticating to {self.name}")

        if not current_user.get('is_admin', False):
            logger.warning(f"Token for {self.name} does not belong to an administrator")

        self.authenticated = True
        logger.info(f"Authenticated to {self.name} as \"{current_user['username']}\"")
        return True

    # Users

    def list_users(self) -> Iterator[Dict[str, Any]]:
        return self.paginate(self._api('/users'))

    def create_user(self, email: str, password: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(attributes)
        body.update({'email': email, 'password': password})
        return self.request('POST', self._api('/users'), body)

    def update_user(self, user_id: int, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('PUT', self._api(f'/users/{user_id}'), attributes)

    def block_user(self, user_id: int) -> Any:
        return self.request('POST', self._api(f'/users/{user_id}/block'))

    def unblock_user(self, user_id: int) -> Any:
        return self.request('POST', self._api(f'/users/{user_id}/unblock'))

    # Groups

    def list_groups(self) -> Iterator[Dict[str, Any]]:
        return self.paginate(self._api('/groups'), {'all_available': 'true'})

    def create_group(self, name: str, path: str) -> Dict[str, Any]:
        return self.request('POST', self._api('/groups'), {'name': name, 'path': path})

    def update_group(self, group_id: int, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('PUT', self._api(f'/groups/{group_id}'), attributes)

    def delete_group(self, group_id: int) -> Any:
        return self.request('DELETE', self._api(f'/groups/{group_id}'))

    def group_project_count(self, group_id: int) -> int:
        return self._content_count(f'/groups/{group_id}/projects')

    def group_subgroup_count(self, group_id: int) -> int:
        return self._content_count(f'/groups/{group_id}/subgroups')

    def _content_count(self, path: str) -> int:
        # a group is only deletable when this is a real, empty listing
        records = self.get(self._api(path), {'per_page': self.page_size})
        if not isinstance(records, list):
            raise PlatformAPIError(f"Unexpected listing response from {self.name} for {path}")
        return len(records)

    # Memberships

    def list_group_members(self, group_id: int) -> Iterator[Dict[str, Any]]:
        return self.paginate(self._api(f'/groups/{group_id}/members'))

    def add_group_member(self, group_id: int, user_id: int, access_level: int) -> Dict[str, Any]:
        return self.request('POST', self._api(f'/groups/{group_id}/members'),
                            {'user_id': user_id, 'access_level': access_level})

    def remove_group_member(self, group_id: int, user_id: int) -> Any:
        return self.request('DELETE', self._api(f'/groups/{group_id}/members/{user_id}'))
