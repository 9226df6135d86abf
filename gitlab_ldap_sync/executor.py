"""
Single choke-point for every mutating platform call.

Dry-run suppression, the inter-call cooldown and the translation of platform failures
into MutationError all happen here, so the reconcilers never call a mutating platform
method directly.
"""

import logging
import time
from typing import Any, Callable, Optional

from gitlab_ldap_sync.errors import EmailCollisionError, MutationError
from gitlab_ldap_sync.models import PlatformId, SimulatedId
from gitlab_ldap_sync.platforms.base import EmailAlreadyTakenError, PlatformAPIError

logger = logging.getLogger(__name__)


class ActionExecutor:
    """
    Run mutating platform calls under dry-run and rate-limiting policy.

    Args:
        dry_run: Log intended calls instead of performing them
        cooldown_seconds: Blocking pause after every performed call
        sleep: Sleep function, replaceable in tests
    """

    def __init__(self, dry_run: bool = False, cooldown_seconds: float = 0.1,
                 sleep: Callable[[float], None] = time.sleep):
        self.dry_run = dry_run
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self._sleep = sleep
        self.performed = 0
        self.suppressed = 0

    def run(self, action: str, call: Callable[..., Any], *args: Any,
            simulated_tag: Optional[str] = None, **kwargs: Any) -> Any:
        """
        Perform one mutating call.

        Args:
            action: Human-readable description used in log lines and errors
            call: Platform method to invoke
            *args: Positional arguments for the call
            simulated_tag: Natural key used to build the placeholder id in dry-run mode
            **kwargs: Keyword arguments for the call

        Returns:
            The call's result, or a SimulatedId (None without a tag) in dry-run mode

        Raises:
            EmailCollisionError: If a user creation is refused because the e-mail is taken
            MutationError: If the call fails for any other reason
        """
        if self.dry_run:
            logger.warning(f"Operation skipped due to dry run: {action}")
            self.suppressed += 1
            return SimulatedId(simulated_tag) if simulated_tag is not None else None

        try:
            result = call(*args, **kwargs)
        except EmailAlreadyTakenError as e:
            raise EmailCollisionError(action, e)
        except PlatformAPIError as e:
            raise MutationError(action, e)
        finally:
            self.performed += 1
            if self.cooldown_seconds:
                self._sleep(self.cooldown_seconds)

        logger.debug(f"Operation done: {action}")
        return result

    def run_for_id(self, action: str, call: Callable[..., Any], *args: Any,
                   simulated_tag: str, **kwargs: Any) -> PlatformId:
        """
        Perform a creating call and return the new entity's id.

        Raises:
            MutationError: If the call fails or the response carries no usable id
        """
        result = self.run(action, call, *args, simulated_tag=simulated_tag, **kwargs)
        if isinstance(result, SimulatedId):
            return result
        try:
            entity_id = int(result['id']) if isinstance(result, dict) else int(result)
        except (KeyError, TypeError, ValueError) as e:
            raise MutationError(action, ValueError(f"response carries no id ({e})"))
        if entity_id < 1:
            raise MutationError(action, ValueError(f"response carries invalid id {entity_id}"))
        return entity_id
