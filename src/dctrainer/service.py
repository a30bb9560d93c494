"""Application service for profiles, lab scenarios, command routing, and practice exams."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from . import __version__
from .config import TrainerConfig
from .content_loader import load_catalog, load_questions, load_scenarios
from .exam import (
    DomainPerformance,
    ExamBreakdown,
    ExamSession,
    ExamTimer,
    exam_result_summary,
    is_exam_passed,
    select_exam_questions,
    weak_domains,
)
from .models import CommandDescriptor, ExamQuestion, Scenario, ScenarioStep
from .parser import ParsedCommand, parse_command
from .policy import StateEngine
from .progress import SNAPSHOT_FORMAT_VERSION, Profile, ProgressStore, merge_snapshots, normalize_snapshot
from .registry import CommandRegistry
from .suggestions import contextual_suggestions, did_you_mean_message
from .validator import CommandExecution, StatePredicate, StepValidator, ValidationResult

logger = logging.getLogger(__name__)


def _bug_report_collected(state: Mapping[str, Any]) -> bool:
    filesystem = state.get("filesystem")
    return isinstance(filesystem, Mapping) and bool(filesystem.get("bug_report"))


DEFAULT_PREDICATES: dict[str, StatePredicate] = {
    "bug_report_collected": _bug_report_collected,
}


@dataclass(frozen=True)
class RoutingDecision:
    """Where one line of terminal input goes, or why it goes nowhere."""

    raw_input: str
    parsed: ParsedCommand
    descriptor: CommandDescriptor | None
    allowed: bool
    requires_root: bool = False
    message: str = ""

    @property
    def handler(self) -> str | None:
        """Return the simulator key that should execute the command."""
        if self.descriptor is None or not self.allowed:
            return None
        return self.descriptor.handler


@dataclass(frozen=True)
class LabTurn:
    """Outcome of one command typed inside a lab."""

    routing: RoutingDecision
    result: ValidationResult | None
    step_completed: bool = False
    scenario_completed: bool = False


@dataclass(frozen=True)
class ExamReport:
    """Graded exam with pass verdict and study guidance."""

    breakdown: ExamBreakdown
    passed: bool
    summary: str
    weak_domains: tuple[DomainPerformance, ...]


@dataclass(frozen=True)
class ProgressTransferSummary:
    """Summary emitted by progress export/merge operations."""

    profile_id: int
    completed_scenarios: int
    completed_steps: int
    exam_attempts: int


@dataclass
class LabSession:
    """One learner working through a scenario's steps in order."""

    profile_id: int
    scenario: Scenario
    validators: list[StepValidator]
    step_index: int = 0
    hints_shown: dict[str, int] = field(default_factory=dict)
    # state domain -> field -> command that last wrote it
    state: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        """Return whether every step is complete."""
        return self.step_index >= len(self.scenario.steps)

    @property
    def current_step(self) -> ScenarioStep | None:
        """Return the active step, or None once finished."""
        if self.finished:
            return None
        return self.scenario.steps[self.step_index]

    @property
    def current_validator(self) -> StepValidator | None:
        """Return the validator for the active step."""
        if self.finished:
            return None
        return self.validators[self.step_index]

    def advance(self) -> ScenarioStep | None:
        """Move past a completed step and return the next one."""
        validator = self.current_validator
        if validator is not None and validator.completed:
            self.step_index += 1
        return self.current_step

    def next_hint(self) -> str | None:
        """Return the next unseen hint for the active step."""
        step = self.current_step
        if step is None or not step.hints:
            return None
        shown = self.hints_shown.get(step.id, 0)
        hint = step.hints[min(shown, len(step.hints) - 1)]
        self.hints_shown[step.id] = shown + 1
        return hint

    def skip(self) -> ScenarioStep | None:
        """Abandon the active step and move on without recording completion."""
        validator = self.current_validator
        if validator is not None:
            validator.abandon()
            self.step_index += 1
        return self.current_step

    def abandon(self) -> None:
        """Discard unfinished step state."""
        validator = self.current_validator
        if validator is not None:
            validator.abandon()


class LabService:
    """Coordinates profiles, the command registry, labs, and exams."""

    def __init__(
        self,
        config: TrainerConfig | None = None,
        *,
        db_path: Path | str | None = None,
        catalog: Iterable[CommandDescriptor] | None = None,
        scenarios: Mapping[str, Scenario] | None = None,
        questions: Iterable[ExamQuestion] | None = None,
        predicates: Mapping[str, StatePredicate] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Load content, build the registry, and open progress storage."""
        self.config = config or TrainerConfig()
        self.registry = CommandRegistry(load_catalog() if catalog is None else catalog)
        self.state_engine = StateEngine(self.registry)
        self.scenarios = dict(load_scenarios() if scenarios is None else scenarios)
        self.questions = list(load_questions() if questions is None else questions)
        self.predicates = {**DEFAULT_PREDICATES, **(predicates or {})}
        self.progress = ProgressStore(self.config.storage.db_path if db_path is None else db_path)
        self._rng = rng or random.Random()
        self._clock = clock

    def list_profiles(self) -> list[Profile]:
        """Return all profiles."""
        return self.progress.list_profiles()

    def create_profile(self, name: str) -> Profile:
        """Create profile by name."""
        return self.progress.create_profile(name.strip())

    def delete_profile(self, profile_id: int) -> bool:
        """Delete one profile by id."""
        return self.progress.delete_profile(profile_id)

    def route(self, raw_input: str, *, is_root: bool = False) -> RoutingDecision:
        """Resolve input to a catalog command and apply the privilege policy."""
        parsed = parse_command(raw_input)
        if not parsed.command:
            return RoutingDecision(raw_input=raw_input, parsed=parsed, descriptor=None, allowed=False)

        descriptor = self.registry.resolve(parsed.command)
        if descriptor is None:
            settings = self.config.suggestions
            hint = did_you_mean_message(
                self.registry, parsed.command, settings.threshold, settings.max_suggestions
            )
            message = f"{parsed.command}: command not found"
            if hint is not None:
                message = f"{message}\n{hint}"
            logger.debug("Unknown command %r", parsed.command)
            return RoutingDecision(raw_input=raw_input, parsed=parsed, descriptor=None, allowed=False, message=message)

        decision = self.state_engine.check(descriptor.name, parsed.flag_names, is_root=is_root)
        logger.debug("Routed %r to %s (allowed=%s)", raw_input, descriptor.handler, decision.allowed)
        return RoutingDecision(
            raw_input=raw_input,
            parsed=parsed,
            descriptor=descriptor,
            allowed=decision.allowed,
            requires_root=decision.requires_root,
            message=decision.reason,
        )

    def list_scenarios(self) -> list[Scenario]:
        """Return scenarios ordered by domain then id."""
        return sorted(self.scenarios.values(), key=lambda item: (item.domain, item.id))

    def completed_scenario_ids(self, profile_id: int) -> set[str]:
        """Return completed scenario ids for a profile."""
        return self.progress.completed_scenario_ids(profile_id)

    def start_lab(self, profile_id: int, scenario_id: str) -> LabSession:
        """Create fresh validators for every step of a scenario."""
        scenario = self.scenarios[scenario_id]
        validators = [
            StepValidator(
                step.validation,
                scenario.id,
                state_engine=self.state_engine,
                predicates=self.predicates,
            )
            for step in scenario.steps
        ]
        return LabSession(profile_id=profile_id, scenario=scenario, validators=validators)

    def run_lab_command(
        self,
        session: LabSession,
        raw_input: str,
        *,
        output: str = "",
        state: Mapping[str, Any] | None = None,
        is_root: bool = False,
    ) -> LabTurn:
        """Route one command and, when it runs, feed it to the active step."""
        routing = self.route(raw_input, is_root=is_root)
        step = session.current_step
        validator = session.current_validator
        if step is None or validator is None:
            return LabTurn(routing=routing, result=None)

        executed = routing.allowed and routing.descriptor is not None
        self.progress.record_command(
            session.profile_id,
            session.scenario.id,
            step.id,
            raw_input,
            routing.descriptor.name if routing.descriptor is not None else "",
            executed,
        )
        if not executed:
            return LabTurn(routing=routing, result=None)

        self._record_writes(session, routing)
        execution = CommandExecution(
            raw_input=raw_input.strip(),
            command=routing.descriptor.name if routing.descriptor is not None else "",
            flags=tuple(routing.parsed.flag_names),
            output=output,
            state={**session.state, **(state or {})},
        )
        already_done = validator.completed
        result = validator.record_command(execution)
        step_completed = result.passed and not already_done
        scenario_completed = False
        if step_completed:
            self.progress.record_step_completion(
                session.profile_id,
                session.scenario.id,
                step.id,
                len(validator.state.commands_executed),
                validator.state.failed_attempts,
            )
            if session.step_index == len(session.scenario.steps) - 1:
                scenario_completed = self._complete_scenario_if_done(session)
            if result.advance:
                session.advance()
        return LabTurn(
            routing=routing,
            result=result,
            step_completed=step_completed,
            scenario_completed=scenario_completed,
        )

    def _record_writes(self, session: LabSession, routing: RoutingDecision) -> None:
        """Log the state fields an executed command writes, per its catalog declaration."""
        if routing.descriptor is None:
            return
        command_text = routing.raw_input.strip()
        for write in self.state_engine.applied_writes(routing.descriptor.name, routing.parsed.flag_names):
            region = session.state.setdefault(write.state_domain, {})
            for name in write.fields or (write.state_domain,):
                region[name] = command_text
            logger.debug("Lab %s: %s wrote %s", session.scenario.id, command_text, write.state_domain)

    def _complete_scenario_if_done(self, session: LabSession) -> bool:
        """Mark the scenario completed once every step has a stored completion."""
        done = self.progress.completed_step_ids(session.profile_id, session.scenario.id)
        if any(step.id not in done for step in session.scenario.steps):
            return False
        self.progress.mark_scenario_completed(session.profile_id, session.scenario.id)
        logger.info("Profile %d completed scenario %s", session.profile_id, session.scenario.id)
        return True

    def suggested_commands(self, session: LabSession) -> list[CommandDescriptor]:
        """Return catalog commands relevant to the active step's objectives."""
        step = session.current_step
        if step is None:
            return []
        return contextual_suggestions(self.registry, step.objectives, self.config.suggestions.contextual_limit)

    def search_commands(self, keyword: str) -> list[CommandDescriptor]:
        """Return catalog matches for a keyword."""
        return self.registry.search(keyword)

    def describe_command(self, name: str) -> CommandDescriptor | None:
        """Return a descriptor by name or alias."""
        return self.registry.resolve(name)

    def start_exam(self) -> ExamSession:
        """Select questions and start a timed exam."""
        settings = self.config.exam
        selection = select_exam_questions(self.questions, settings.question_count, self._rng)
        timer = ExamTimer(settings.duration_minutes * 60, clock=self._clock)
        session = ExamSession(selection, timer)
        session.start()
        return session

    def finish_exam(self, profile_id: int, session: ExamSession) -> ExamReport:
        """Grade an exam, store the attempt, and build the report."""
        passing_score = self.config.exam.passing_score
        breakdown = session.finish()
        passed = is_exam_passed(breakdown, passing_score)
        self.progress.record_exam_attempt(
            profile_id,
            percentage=breakdown.percentage,
            passed=passed,
            time_spent=breakdown.time_spent,
            by_domain={domain: item.percentage for domain, item in breakdown.by_domain.items()},
        )
        return ExamReport(
            breakdown=breakdown,
            passed=passed,
            summary=exam_result_summary(breakdown, passed, passing_score),
            weak_domains=tuple(
                item for item in weak_domains(breakdown, passing_score) if item.questions_total > 0
            ),
        )

    def export_progress(self, profile_id: int, export_path: Path | str) -> ProgressTransferSummary:
        """Export a profile's progress snapshot to a JSON file."""
        profile = self.progress.get_profile(profile_id)
        if profile is None:
            raise KeyError(profile_id)
        snapshot = self.progress.export_snapshot(profile_id)
        payload = {
            "exported_at": datetime.now(UTC).isoformat(),
            "source": {"app_version": __version__},
            "profile": {"name": profile.name},
            **snapshot,
        }
        path = Path(export_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return _transfer_summary(profile_id, snapshot)

    def merge_progress(self, profile_id: int, import_path: Path | str) -> ProgressTransferSummary:
        """Merge a progress snapshot file into a profile, keeping the best of both."""
        if self.progress.get_profile(profile_id) is None:
            raise KeyError(profile_id)
        raw_obj: object = json.loads(Path(import_path).read_text(encoding="utf-8"))
        if not isinstance(raw_obj, dict):
            raise ValueError("Import file root must be a JSON object.")
        remote = cast(dict[str, Any], raw_obj)
        format_version = remote.get("format_version", 0)
        if not isinstance(format_version, int) or format_version > SNAPSHOT_FORMAT_VERSION:
            raise ValueError(f"Unsupported progress format version: {format_version!r}")

        merged = merge_snapshots(self.progress.export_snapshot(profile_id), normalize_snapshot(remote))
        self.progress.apply_snapshot(profile_id, merged)
        return _transfer_summary(profile_id, self.progress.export_snapshot(profile_id))

    def close(self) -> None:
        """Close resources."""
        self.progress.close()


def _transfer_summary(profile_id: int, snapshot: dict[str, Any]) -> ProgressTransferSummary:
    return ProgressTransferSummary(
        profile_id=profile_id,
        completed_scenarios=len(snapshot["completed_scenarios"]),
        completed_steps=sum(len(steps) for steps in snapshot["completed_steps"].values()),
        exam_attempts=len(snapshot["exam_attempts"]),
    )
