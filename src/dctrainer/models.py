"""Core domain models for the command catalog, lab scenarios, and exam questions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

COMMAND_CATEGORIES = (
    "nvidia",
    "bmc",
    "linux",
    "cluster",
    "container",
    "network",
    "diagnostic",
    "system",
    "other",
)

RULE_KINDS = ("command", "output", "state", "sequence")

STATE_CHECKS = ("equals", "exists", "contains", "at_least", "at_most", "wrote_state", "named")

DOMAIN_IDS = ("domain1", "domain2", "domain3", "domain4", "domain5")

QUESTION_TYPES = ("multiple-choice", "multiple-select", "true-false")

DIFFICULTY_LEVELS = ("beginner", "intermediate", "advanced")


def strip_dashes(flag: str) -> str:
    """Return a flag spelling without its leading dashes."""
    return flag.lstrip("-")


@dataclass(frozen=True)
class CommandOption:
    """One flag a catalog command accepts."""

    flag: str
    aliases: tuple[str, ...] = ()
    description: str = ""
    requires_root: bool = False

    def matches(self, flag: str) -> bool:
        """Return whether a dash-stripped flag names this option."""
        name = strip_dashes(flag)
        return name == self.flag or name in self.aliases


@dataclass(frozen=True)
class StateAccess:
    """One read or write of a logical cluster state region."""

    state_domain: str
    fields: tuple[str, ...] = ()
    description: str = ""
    requires_privilege: str | None = None
    requires_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class StateInteraction:
    """State regions a command reads from and writes to."""

    reads_from: tuple[StateAccess, ...] = ()
    writes_to: tuple[StateAccess, ...] = ()


@dataclass(frozen=True)
class CommandDescriptor:
    """One simulated command known to the catalog."""

    name: str
    category: str
    description: str
    handler: str
    aliases: tuple[str, ...] = ()
    long_description: str = ""
    examples: tuple[str, ...] = ()
    options: tuple[CommandOption, ...] = ()
    state_interactions: StateInteraction | None = None
    requires_cluster: bool = False
    modifies_state: bool = False

    def all_names(self) -> tuple[str, ...]:
        """Return canonical name followed by aliases."""
        return (self.name, *self.aliases)


@dataclass(frozen=True)
class StateCheck:
    """Declarative predicate over the execution state snapshot."""

    check: str
    path: str = ""
    value: Any = None
    name: str = ""


@dataclass(frozen=True)
class ValidationRule:
    """One completion criterion of a scenario step."""

    id: str
    kind: str
    pattern: str | None = None
    command_pattern: str | None = None
    state_check: StateCheck | None = None
    sequence: tuple[str, ...] = ()
    error_message: str | None = None
    weight: float = 1.0
    require_all_commands: bool = False
    expected_commands: tuple[str, ...] = ()


@dataclass(frozen=True)
class StepValidation:
    """Rule set binding for one scenario step."""

    step_id: str
    rules: tuple[ValidationRule, ...]
    minimum_score: float = 100.0
    partial_credit: bool = False
    auto_advance: bool = False


@dataclass(frozen=True)
class ScenarioStep:
    """One discrete task within a guided lab."""

    id: str
    title: str
    objectives: tuple[str, ...]
    validation: StepValidation
    hints: tuple[str, ...] = ()


@dataclass(frozen=True)
class Scenario:
    """Guided lab exercise made of ordered steps."""

    id: str
    title: str
    domain: str
    difficulty: str
    description: str
    steps: tuple[ScenarioStep, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExamQuestion:
    """One practice-exam question."""

    id: str
    domain: str
    type: str
    question_text: str
    choices: tuple[str, ...]
    correct_answer: int | tuple[int, ...]
    points: int = 1
    explanation: str = ""
