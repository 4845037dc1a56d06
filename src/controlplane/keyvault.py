"""
Key vault secret lifecycle reconciliation.

Bootstrap stages keep the storage account connection string in the
deployer key vault. A secret may be in one of three states when a stage
runs:

- deleted but recoverable (soft-delete): recover it, then wait until it is
  readable again before comparing or writing
- present: update it only when the value differs
- absent: create it

Every write sets a one-year expiry.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from controlplane.azure import AzureCli
from controlplane.errors import ExternalToolError, SecretRecoveryTimeout
from controlplane.timeouts import (
    SECRET_EXPIRY_YEARS,
    SECRET_RECOVERY_BACKOFF,
    SECRET_RECOVERY_MAX_DELAY_S,
    SECRET_RECOVERY_POLL_INTERVAL_S,
    SECRET_RECOVERY_TIMEOUT_S,
)

__all__ = ["SecretAction", "KeyVault", "one_year_from"]

logger = logging.getLogger(__name__)

EXPIRY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SecretAction(str, Enum):
    """What reconciliation did to a secret."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    RECOVERED = "recovered"


def one_year_from(now: Optional[datetime] = None) -> str:
    """Expiry timestamp one calendar year after ``now`` (UTC)."""
    now = now or datetime.now(timezone.utc)
    try:
        expires = now.replace(year=now.year + SECRET_EXPIRY_YEARS)
    except ValueError:
        # 29 February in a non-leap target year
        expires = now.replace(year=now.year + SECRET_EXPIRY_YEARS, day=28)
    return expires.strftime(EXPIRY_FORMAT)


class KeyVault:
    """
    Secret operations on one key vault through the Azure CLI.

    Args:
        name: Key vault name
        az: Azure CLI wrapper
        timeout_s: Maximum wait for a recovered secret to become readable
        interval_s: Initial delay between readiness polls
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        name: str,
        az: AzureCli,
        timeout_s: float = SECRET_RECOVERY_TIMEOUT_S,
        interval_s: float = SECRET_RECOVERY_POLL_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.az = az
        self.timeout_s = timeout_s
        self.interval_s = interval_s
        self._sleep = sleep
        self._clock = clock

    def is_deleted(self, secret: str) -> bool:
        """Whether ``secret`` is soft-deleted and recoverable."""
        return secret in self.az.names(
            ["keyvault", "secret", "list-deleted", "--vault-name", self.name]
        )

    def exists(self, secret: str) -> bool:
        """Whether ``secret`` is present (not deleted)."""
        return secret in self.az.names(
            ["keyvault", "secret", "list", "--vault-name", self.name]
        )

    def get(self, secret: str) -> Optional[str]:
        """Current value of ``secret``."""
        value = self.az.json([
            "keyvault", "secret", "show",
            "--name", secret,
            "--vault-name", self.name,
            "--query", "value",
        ])
        return None if value is None else str(value)

    def set(self, secret: str, value: str, expires: Optional[str] = None) -> None:
        """Create or update ``secret`` with a one-year expiry."""
        self.az.run([
            "keyvault", "secret", "set",
            "--name", secret,
            "--vault-name", self.name,
            "--value", value,
            "--expires", expires or one_year_from(),
            "--only-show-errors",
            "--output", "none",
        ])

    def recover(self, secret: str) -> None:
        """Recover a soft-deleted secret."""
        logger.info(f"Recovering secret {secret} in keyvault {self.name}")
        self.az.run([
            "keyvault", "secret", "recover",
            "--name", secret,
            "--vault-name", self.name,
            "--output", "none",
        ])

    def wait_until_available(self, secret: str) -> None:
        """
        Poll until a recovered secret is readable.

        Uses exponential backoff starting at ``interval_s``.

        Raises:
            SecretRecoveryTimeout: If the secret is not readable within ``timeout_s``.
        """
        deadline = self._clock() + self.timeout_s
        delay = self.interval_s
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.get(secret) is not None:
                    logger.info(f"Secret {secret} available after {attempt} check(s)")
                    return
            except ExternalToolError as e:
                logger.debug(f"Secret {secret} not readable yet: {e}")

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise SecretRecoveryTimeout(
                    f"Secret {secret} in keyvault {self.name} not available "
                    f"{self.timeout_s:.0f}s after recovery"
                )
            self._sleep(min(delay, remaining, SECRET_RECOVERY_MAX_DELAY_S))
            delay *= SECRET_RECOVERY_BACKOFF

    def _recover_if_deleted(self, secret: str) -> bool:
        if not self.is_deleted(secret):
            return False
        self.recover(secret)
        self.wait_until_available(secret)
        return True

    def reconcile(self, secret: str, value: str) -> SecretAction:
        """
        Make ``secret`` hold ``value``.

        A soft-deleted secret is recovered before anything is compared or
        written. Existing secrets are only rewritten when the value differs.

        Returns:
            The action taken.
        """
        recovered = self._recover_if_deleted(secret)

        if recovered or self.exists(secret):
            current = self.get(secret)
            if current == value:
                logger.info(f"Secret {secret} is up to date")
                return SecretAction.RECOVERED if recovered else SecretAction.UNCHANGED
            logger.info(f"Updating secret {secret} in keyvault {self.name}")
            self.set(secret, value)
            return SecretAction.UPDATED

        logger.info(f"Creating secret {secret} in keyvault {self.name}")
        self.set(secret, value)
        return SecretAction.CREATED

    def ensure_available(self, secret: str) -> Optional[str]:
        """Recover ``secret`` if needed and return its value (None when absent)."""
        recovered = self._recover_if_deleted(secret)
        if recovered or self.exists(secret):
            return self.get(secret)
        return None
