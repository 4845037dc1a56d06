"""Thin Azure CLI helpers shared by the key vault and storage operations."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional, Sequence

from controlplane.errors import ExternalToolError
from controlplane.runner import CommandRunner

__all__ = ["AzureCli", "StorageAccount"]

logger = logging.getLogger(__name__)


class AzureCli:
    """Runs ``az`` commands and decodes their JSON output."""

    def __init__(self, runner: CommandRunner, env: Optional[Mapping[str, str]] = None):
        self.runner = runner
        self.env = env

    def run(self, args: Sequence[str]) -> str:
        """
        Run ``az <args>`` and return stdout.

        Raises:
            ExternalToolError: If az exits non-zero.
        """
        result = self.runner.run(["az", *args], env=self.env, capture=True)
        if not result.ok:
            raise ExternalToolError(
                f"az {' '.join(args[:3])} failed: {result.stderr.strip()}",
                result.returncode,
            )
        return result.stdout

    def json(self, args: Sequence[str]) -> Any:
        """Run ``az <args> --output json`` and decode the result (None when empty)."""
        out = self.run([*args, "--output", "json"]).strip()
        if not out:
            return None
        try:
            return json.loads(out)
        except ValueError as e:
            raise ExternalToolError(f"az {' '.join(args[:3])} returned invalid JSON: {e}") from e

    def names(self, args: Sequence[str]) -> List[str]:
        """Run a listing command and return the ``name`` of each entry."""
        return [str(n) for n in (self.json([*args, "--query", "[].name"]) or [])]

    def is_logged_in(self) -> bool:
        """Whether ``az account show`` succeeds."""
        return self.runner.run(["az", "account", "show"], env=self.env, capture=True).ok


class StorageAccount:
    """Network rule management for the remote state storage account."""

    def __init__(self, az: AzureCli, resource_group: str, name: str):
        self.az = az
        self.resource_group = resource_group
        self.name = name

    def add_network_rule(self, ip_address: str) -> None:
        """Allow ``ip_address`` through the storage account firewall."""
        logger.info(f"Adding {ip_address} to the network rules of {self.name}")
        self.az.run([
            "storage", "account", "network-rule", "add",
            "-g", self.resource_group,
            "--account-name", self.name,
            "--ip-address", ip_address,
            "--output", "none",
        ])
