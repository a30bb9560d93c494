"""Privilege and state-interaction policy derived from catalog declarations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .models import StateAccess, StateInteraction, strip_dashes
from .registry import CommandRegistry

logger = logging.getLogger(__name__)

ROOT_PRIVILEGE = "root"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a privilege check for one invocation."""

    allowed: bool
    requires_root: bool
    reason: str = ""


class StateEngine:
    """Answer privilege and state questions from catalog `state_interactions`."""

    def __init__(self, registry: CommandRegistry) -> None:
        """Bind policy checks to one registry."""
        self.registry = registry

    def flag_requires_root(self, command: str, flag: str) -> bool:
        """Return whether one flag of a command is declared root-only."""
        descriptor = self.registry.resolve(command)
        if descriptor is None:
            return False
        return any(option.requires_root and option.matches(flag) for option in descriptor.options)

    def requires_root(self, command: str, flags: Iterable[str]) -> bool:
        """Return whether the invocation needs root.

        Commands missing from the catalog are allowed through: unknown-command
        handling belongs to resolution and suggestions, not to this policy.
        """
        presented = {strip_dashes(flag) for flag in flags}
        if any(self.flag_requires_root(command, flag) for flag in presented):
            return True

        interactions = self.get_state_interactions(command)
        if interactions is None:
            return False
        return any(
            write.requires_privilege == ROOT_PRIVILEGE and _write_applies(write, presented)
            for write in interactions.writes_to
        )

    def get_state_interactions(self, command: str) -> StateInteraction | None:
        """Return declared state interactions for a command, if any."""
        descriptor = self.registry.resolve(command)
        if descriptor is None:
            return None
        return descriptor.state_interactions

    def applied_writes(self, command: str, flags: Iterable[str]) -> list[StateAccess]:
        """Return the declared writes this invocation performs."""
        interactions = self.get_state_interactions(command)
        if interactions is None:
            return []
        presented = {strip_dashes(flag) for flag in flags}
        return [write for write in interactions.writes_to if _write_applies(write, presented)]

    def written_domains(self, command: str, flags: Iterable[str]) -> set[str]:
        """Return state domains this invocation writes to."""
        return {write.state_domain for write in self.applied_writes(command, flags)}

    def check(self, command: str, flags: Iterable[str], *, is_root: bool) -> PolicyDecision:
        """Decide whether a user with the given privilege may run the invocation."""
        needs_root = self.requires_root(command, flags)
        if needs_root and not is_root:
            logger.warning("Denied %s: root privileges required", command)
            return PolicyDecision(
                allowed=False,
                requires_root=True,
                reason=f"{command}: permission denied (are you root?)",
            )
        return PolicyDecision(allowed=True, requires_root=needs_root)


def _write_applies(write: StateAccess, presented: set[str]) -> bool:
    """A write with no required flags always applies; otherwise one listed flag must be present."""
    if not write.requires_flags:
        return True
    return any(strip_dashes(flag) in presented for flag in write.requires_flags)
