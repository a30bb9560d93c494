"""Judge scenario step completion from the stream of executed commands."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import StateCheck, StepValidation, ValidationRule
from .policy import StateEngine

logger = logging.getLogger(__name__)

ARMED = "armed"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"
ABANDONED = "abandoned"
TERMINAL_PHASES = frozenset({COMPLETED, ABANDONED})

GENERIC_FEEDBACK = "Not quite yet. Review the step objectives and try another command."
COMPLETE_FEEDBACK = "Step complete."

StatePredicate = Callable[[Mapping[str, Any]], bool]

_MISSING = object()


@dataclass(frozen=True)
class CommandExecution:
    """One executed command as handed over by the simulation layer."""

    raw_input: str
    command: str = ""
    flags: tuple[str, ...] = ()
    output: str = ""
    state: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleResult:
    """Outcome of one rule."""

    rule_id: str
    passed: bool
    message: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    """Step outcome recomputed after every command."""

    passed: bool
    matched_rules: tuple[str, ...]
    failed_rules: tuple[str, ...]
    feedback: str
    progress: int
    score: float
    rule_results: tuple[RuleResult, ...]
    advance: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return JSON-ready data."""
        return {
            "passed": self.passed,
            "matched_rules": list(self.matched_rules),
            "failed_rules": list(self.failed_rules),
            "feedback": self.feedback,
            "progress": self.progress,
            "score": self.score,
            "rule_results": [
                {"rule_id": item.rule_id, "passed": item.passed, "message": item.message} for item in self.rule_results
            ],
            "advance": self.advance,
        }


@dataclass
class StepValidationState:
    """Mutable progress of one (scenario, step) pair."""

    scenario_id: str
    step_id: str
    result: ValidationResult
    commands_executed: list[str] = field(default_factory=list)
    start_time: float | None = None
    last_command_time: float | None = None
    failed_attempts: int = 0
    phase: str = ARMED

    def to_dict(self) -> dict[str, object]:
        """Return JSON-ready data for the sync layer."""
        return {
            "scenario_id": self.scenario_id,
            "step_id": self.step_id,
            "phase": self.phase,
            "commands_executed": list(self.commands_executed),
            "start_time": self.start_time,
            "last_command_time": self.last_command_time,
            "failed_attempts": self.failed_attempts,
            "result": self.result.to_dict(),
        }


class StepValidator:
    """Evaluate one step's rules against commands delivered one at a time."""

    def __init__(
        self,
        validation: StepValidation,
        scenario_id: str,
        *,
        state_engine: StateEngine | None = None,
        predicates: Mapping[str, StatePredicate] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Compile rule patterns and arm the step."""
        self.validation = validation
        self.scenario_id = scenario_id
        self.state_engine = state_engine
        self.predicates = dict(predicates or {})
        self._clock = clock
        self._patterns = {rule.id: _compile_rule_pattern(rule) for rule in validation.rules}
        for rule in validation.rules:
            check = rule.state_check
            if check is not None and check.check == "named" and check.name not in self.predicates:
                raise ValueError(f"Rule '{rule.id}' references unknown state predicate '{check.name}'.")
        self._matched: set[str] = set()
        self._written_domains: set[str] = set()
        self.state = self._armed_state()

    def _armed_state(self) -> StepValidationState:
        return StepValidationState(
            scenario_id=self.scenario_id,
            step_id=self.validation.step_id,
            result=self._build_result(after_command=False),
        )

    def start(self) -> StepValidationState:
        """Arm the step for a fresh attempt."""
        return self.reset()

    def reset(self) -> StepValidationState:
        """Re-arm the step, discarding prior progress."""
        self._matched.clear()
        self._written_domains.clear()
        self.state = self._armed_state()
        return self.state

    def abandon(self) -> StepValidationState:
        """Mark an unfinished step as abandoned."""
        if self.state.phase != COMPLETED:
            self.state.phase = ABANDONED
        return self.state

    @property
    def completed(self) -> bool:
        """Return whether completion criteria have been met."""
        return self.state.phase == COMPLETED

    def record_command(self, execution: CommandExecution) -> ValidationResult:
        """Consume one executed command and return the refreshed result."""
        state = self.state
        if state.phase in TERMINAL_PHASES:
            return state.result

        now = self._clock()
        state.commands_executed.append(execution.raw_input)
        if state.start_time is None:
            state.start_time = now
        state.last_command_time = now
        if self.state_engine is not None and execution.command:
            self._written_domains.update(self.state_engine.written_domains(execution.command, execution.flags))

        for rule in self.validation.rules:
            if rule.id in self._matched:
                continue
            if self._evaluate(rule, execution):
                self._matched.add(rule.id)

        result = self._build_result(after_command=True)
        state.result = result
        if result.passed:
            state.phase = COMPLETED
        else:
            state.phase = IN_PROGRESS
            state.failed_attempts += 1
        logger.debug(
            "Step %s/%s: %s matched %d/%d",
            self.scenario_id,
            self.validation.step_id,
            execution.raw_input,
            len(result.matched_rules),
            len(self.validation.rules),
        )
        return result

    def _evaluate(self, rule: ValidationRule, execution: CommandExecution) -> bool:
        evaluator = _RULE_EVALUATORS.get(rule.kind)
        if evaluator is None:
            raise ValueError(f"Rule '{rule.id}' has unknown kind '{rule.kind}'.")
        return evaluator(self, rule, execution)

    def _match_command(self, rule: ValidationRule, execution: CommandExecution) -> bool:
        pattern = self._patterns[rule.id]
        return pattern is not None and pattern.search(execution.raw_input) is not None

    def _match_output(self, rule: ValidationRule, execution: CommandExecution) -> bool:
        pattern = self._patterns[rule.id]
        return pattern is not None and pattern.search(execution.output) is not None

    def _match_state(self, rule: ValidationRule, execution: CommandExecution) -> bool:
        if rule.state_check is None:
            return False
        return self._check_state(rule.state_check, execution.state)

    def _match_sequence(self, rule: ValidationRule, execution: CommandExecution) -> bool:
        executed = self.state.commands_executed
        if rule.sequence and not _in_order(rule.sequence, executed):
            return False
        if rule.require_all_commands:
            return all(any(_command_matches(expected, item) for item in executed) for expected in rule.expected_commands)
        return bool(rule.sequence)

    def _check_state(self, check: StateCheck, snapshot: Mapping[str, Any]) -> bool:
        if check.check == "named":
            return bool(self.predicates[check.name](snapshot))
        if check.check == "wrote_state":
            return check.value in self._written_domains
        actual = lookup_path(snapshot, check.path)
        if check.check == "exists":
            return actual is not _MISSING and actual is not None
        if actual is _MISSING:
            return False
        if check.check == "equals":
            return bool(actual == check.value)
        if check.check == "contains":
            try:
                return check.value in actual
            except TypeError:
                return False
        if check.check in ("at_least", "at_most"):
            try:
                number = float(actual)
                bound = float(check.value)
            except (TypeError, ValueError):
                return False
            return number >= bound if check.check == "at_least" else number <= bound
        raise ValueError(f"Unknown state check '{check.check}'.")

    def _build_result(self, *, after_command: bool) -> ValidationResult:
        validation = self.validation
        rules = validation.rules
        matched = tuple(rule.id for rule in rules if rule.id in self._matched)
        failed = tuple(rule.id for rule in rules if rule.id not in self._matched)
        rule_results = tuple(
            RuleResult(
                rule_id=rule.id,
                passed=rule.id in self._matched,
                message=None if rule.id in self._matched else rule.error_message,
            )
            for rule in rules
        )

        total_weight = sum(rule.weight for rule in rules)
        matched_weight = sum(rule.weight for rule in rules if rule.id in self._matched)
        if total_weight > 0:
            score = matched_weight / total_weight
        else:
            score = 1.0 if not failed else 0.0
        progress = 100 if not rules else round(100 * len(matched) / len(rules))

        if not after_command:
            passed = False
        elif validation.partial_credit:
            passed = score * 100 >= validation.minimum_score
        else:
            passed = not failed

        if passed:
            feedback = COMPLETE_FEEDBACK
        elif not after_command:
            feedback = ""
        else:
            first_failed = next(rule for rule in rules if rule.id not in self._matched)
            feedback = first_failed.error_message or GENERIC_FEEDBACK

        return ValidationResult(
            passed=passed,
            matched_rules=matched,
            failed_rules=failed,
            feedback=feedback,
            progress=progress,
            score=score,
            rule_results=rule_results,
            advance=passed and validation.auto_advance,
        )


_RULE_EVALUATORS: dict[str, Callable[[StepValidator, ValidationRule, CommandExecution], bool]] = {
    "command": StepValidator._match_command,
    "output": StepValidator._match_output,
    "state": StepValidator._match_state,
    "sequence": StepValidator._match_sequence,
}


def validate_command(
    validation: StepValidation,
    raw_input: str,
    output: str = "",
    state: Mapping[str, Any] | None = None,
) -> ValidationResult:
    """Evaluate a single command against a fresh step, without keeping state."""
    validator = StepValidator(validation, scenario_id="")
    return validator.record_command(CommandExecution(raw_input=raw_input, output=output, state=state or {}))


def lookup_path(snapshot: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings and sequences."""
    current: Any = snapshot
    for part in path.split(".") if path else []:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list | tuple):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a rule pattern; invalid expressions raise ValueError."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"Invalid pattern '{pattern}': {exc}") from exc


def _compile_rule_pattern(rule: ValidationRule) -> re.Pattern[str] | None:
    if rule.kind == "command":
        source = rule.command_pattern or rule.pattern
    elif rule.kind == "output":
        source = rule.pattern
    else:
        return None
    return compile_pattern(source) if source else None


def _command_matches(expected: str, executed: str) -> bool:
    """An expected command matches the same input or any input extending it."""
    wanted = expected.strip()
    given = executed.strip()
    return given == wanted or given.startswith(wanted + " ")


def _in_order(sequence: tuple[str, ...], executed: list[str]) -> bool:
    """Return whether sequence entries appear in order, gaps allowed."""
    position = 0
    for expected in sequence:
        while position < len(executed) and not _command_matches(expected, executed[position]):
            position += 1
        if position >= len(executed):
            return False
        position += 1
    return True
