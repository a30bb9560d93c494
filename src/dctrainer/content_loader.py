"""Load the command catalog, lab scenarios, and exam questions from bundled JSON resources."""

from __future__ import annotations

import json
import logging
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

from .models import (
    COMMAND_CATEGORIES,
    DIFFICULTY_LEVELS,
    DOMAIN_IDS,
    QUESTION_TYPES,
    RULE_KINDS,
    STATE_CHECKS,
    CommandDescriptor,
    CommandOption,
    ExamQuestion,
    Scenario,
    ScenarioStep,
    StateAccess,
    StateCheck,
    StateInteraction,
    StepValidation,
    ValidationRule,
    strip_dashes,
)
from .validator import compile_pattern

logger = logging.getLogger(__name__)

CONTENT_PACKAGE = "dctrainer.content"
SCENARIO_PACKAGE = "dctrainer.content.scenarios"
CATALOG_FILE = "commands.json"
QUESTIONS_FILE = "questions.json"
TRUE_FALSE_CHOICES = ("True", "False")


def _read_json(entry: Traversable | Path) -> Any:
    return json.loads(entry.read_text(encoding="utf-8-sig"))


def _strings(raw: Any) -> tuple[str, ...]:
    return tuple(str(item).strip() for item in (raw or []) if str(item).strip())


def _access_from_dict(command: str, raw: dict[str, Any]) -> StateAccess:
    """Build one state read/write declaration."""
    domain = str(raw.get("state_domain", "")).strip()
    if not domain:
        raise ValueError(f"Command '{command}' has a state interaction without state_domain.")
    privilege = raw.get("requires_privilege")
    return StateAccess(
        state_domain=domain,
        fields=_strings(raw.get("fields")),
        description=str(raw.get("description", "")),
        requires_privilege=str(privilege) if privilege else None,
        requires_flags=_strings(raw.get("requires_flags")),
    )


def _option_from_dict(command: str, raw: dict[str, Any]) -> CommandOption:
    """Build one command option; flag spellings are stored without dashes."""
    flag = strip_dashes(str(raw.get("flag", "")).strip())
    if not flag:
        raise ValueError(f"Command '{command}' has an option without a flag.")
    return CommandOption(
        flag=flag,
        aliases=tuple(strip_dashes(alias) for alias in _strings(raw.get("aliases"))),
        description=str(raw.get("description", "")),
        requires_root=bool(raw.get("requires_root", False)),
    )


def _command_from_dict(raw: dict[str, Any]) -> CommandDescriptor:
    """Build a command descriptor from raw JSON content."""
    name = str(raw.get("name", "")).strip()
    if not name:
        raise ValueError("Catalog entry has no name.")
    category = str(raw.get("category", "other"))
    if category not in COMMAND_CATEGORIES:
        raise ValueError(f"Command '{name}' has unknown category '{category}'.")

    interactions = None
    raw_interactions = raw.get("state_interactions")
    if raw_interactions:
        interactions = StateInteraction(
            reads_from=tuple(_access_from_dict(name, item) for item in raw_interactions.get("reads_from", [])),
            writes_to=tuple(_access_from_dict(name, item) for item in raw_interactions.get("writes_to", [])),
        )

    return CommandDescriptor(
        name=name,
        category=category,
        description=str(raw.get("description", "")),
        handler=str(raw.get("handler", name)),
        aliases=_strings(raw.get("aliases")),
        long_description=str(raw.get("long_description", "")),
        examples=_strings(raw.get("examples")),
        options=tuple(_option_from_dict(name, item) for item in raw.get("options", [])),
        state_interactions=interactions,
        requires_cluster=bool(raw.get("requires_cluster", False)),
        modifies_state=bool(raw.get("modifies_state", False)),
    )


def _commands_from_document(raw: Any, source: str) -> list[CommandDescriptor]:
    entries = raw.get("commands") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ValueError(f"Catalog document {source} must contain a 'commands' list.")
    return [_command_from_dict(item) for item in entries]


def load_catalog() -> list[CommandDescriptor]:
    """Load the bundled command catalog."""
    entry = resources.files(CONTENT_PACKAGE).joinpath(CATALOG_FILE)
    commands = _commands_from_document(_read_json(entry), CATALOG_FILE)
    logger.debug("Loaded %d catalog commands", len(commands))
    return commands


def load_catalog_from_path(path: Path) -> list[CommandDescriptor]:
    """Load a catalog from one JSON file or every JSON file in a directory."""
    files = sorted(path.glob("*.json")) if path.is_dir() else [path]
    commands: list[CommandDescriptor] = []
    for file_path in files:
        commands.extend(_commands_from_document(_read_json(file_path), str(file_path)))
    return commands


def _state_check_from_dict(rule_id: str, raw: dict[str, Any]) -> StateCheck:
    """Build a declarative state check."""
    check = str(raw.get("check", ""))
    if check not in STATE_CHECKS:
        raise ValueError(f"Rule '{rule_id}' has unknown state check '{check}'.")
    path = str(raw.get("path", ""))
    name = str(raw.get("name", ""))
    if check == "named" and not name:
        raise ValueError(f"Rule '{rule_id}' uses a named state check without a name.")
    if check not in ("named", "wrote_state") and not path:
        raise ValueError(f"Rule '{rule_id}' state check '{check}' needs a path.")
    if check == "wrote_state" and not raw.get("value"):
        raise ValueError(f"Rule '{rule_id}' wrote_state check needs a state domain value.")
    return StateCheck(check=check, path=path, value=raw.get("value"), name=name)


def _rule_from_dict(step_id: str, raw: dict[str, Any]) -> ValidationRule:
    """Build a validation rule and reject malformed variants early."""
    rule_id = str(raw.get("id", "")).strip()
    if not rule_id:
        raise ValueError(f"Step '{step_id}' has a rule without an id.")
    kind = str(raw.get("kind", ""))
    if kind not in RULE_KINDS:
        raise ValueError(f"Rule '{rule_id}' has unknown kind '{kind}'.")

    pattern = raw.get("pattern")
    command_pattern = raw.get("command_pattern")
    for source in (pattern, command_pattern):
        if source:
            compile_pattern(str(source))
    if kind == "command" and not (pattern or command_pattern):
        raise ValueError(f"Rule '{rule_id}' needs a pattern or command_pattern.")
    if kind == "output" and not pattern:
        raise ValueError(f"Rule '{rule_id}' needs an output pattern.")

    state_check = None
    if kind == "state":
        raw_check = raw.get("state_check")
        if not isinstance(raw_check, dict):
            raise ValueError(f"Rule '{rule_id}' needs a state_check.")
        state_check = _state_check_from_dict(rule_id, raw_check)

    sequence = _strings(raw.get("sequence"))
    require_all = bool(raw.get("require_all_commands", False))
    expected = _strings(raw.get("expected_commands"))
    if kind == "sequence" and not sequence and not require_all:
        raise ValueError(f"Rule '{rule_id}' has an empty sequence.")
    if require_all and not expected:
        raise ValueError(f"Rule '{rule_id}' requires all commands but lists no expected_commands.")

    weight = float(raw.get("weight", 1.0))
    if weight < 0:
        raise ValueError(f"Rule '{rule_id}' has a negative weight.")

    return ValidationRule(
        id=rule_id,
        kind=kind,
        pattern=str(pattern) if pattern else None,
        command_pattern=str(command_pattern) if command_pattern else None,
        state_check=state_check,
        sequence=sequence,
        error_message=str(raw["error_message"]) if raw.get("error_message") else None,
        weight=weight,
        require_all_commands=require_all,
        expected_commands=expected,
    )


def _step_from_dict(scenario_id: str, raw: dict[str, Any]) -> ScenarioStep:
    """Build a scenario step with its validation block."""
    step_id = str(raw.get("id", "")).strip()
    if not step_id:
        raise ValueError(f"Scenario '{scenario_id}' has a step with no id.")
    title = str(raw.get("title", "")).strip()
    if not title:
        raise ValueError(f"Step '{step_id}' in scenario '{scenario_id}' has no title.")
    raw_validation = raw.get("validation", {})
    rules = tuple(_rule_from_dict(step_id, item) for item in raw_validation.get("rules", []))
    rule_ids = [rule.id for rule in rules]
    if len(rule_ids) != len(set(rule_ids)):
        raise ValueError(f"Step '{step_id}' has duplicate rule ids.")
    minimum = float(raw_validation.get("minimum_score", 100))
    if not 0 <= minimum <= 100:
        raise ValueError(f"Step '{step_id}' minimum_score must be within 0-100.")
    validation = StepValidation(
        step_id=step_id,
        rules=rules,
        minimum_score=minimum,
        partial_credit=bool(raw_validation.get("partial_credit", False)),
        auto_advance=bool(raw_validation.get("auto_advance", False)),
    )
    return ScenarioStep(
        id=step_id,
        title=title,
        objectives=_strings(raw.get("objectives")),
        validation=validation,
        hints=_strings(raw.get("hints")),
    )


def _scenario_from_dict(raw: dict[str, Any], source: str) -> Scenario:
    """Build a scenario from raw JSON content; `source` names the file in errors."""
    if not isinstance(raw, dict):
        raise ValueError(f"Scenario file {source} must contain a JSON object.")
    scenario_id = str(raw.get("id", "")).strip()
    if not scenario_id:
        raise ValueError(f"Scenario in {source} has no id.")
    title = str(raw.get("title", "")).strip()
    if not title:
        raise ValueError(f"Scenario '{scenario_id}' has no title.")
    domain = str(raw.get("domain", ""))
    if domain not in DOMAIN_IDS:
        raise ValueError(f"Scenario '{scenario_id}' has unknown domain '{domain}'.")
    difficulty = str(raw.get("difficulty", "beginner"))
    if difficulty not in DIFFICULTY_LEVELS:
        raise ValueError(f"Scenario '{scenario_id}' has unknown difficulty '{difficulty}'.")
    steps = tuple(_step_from_dict(scenario_id, item) for item in raw.get("steps", []))
    if not steps:
        raise ValueError(f"Scenario '{scenario_id}' has no steps.")
    step_ids = [step.id for step in steps]
    if len(step_ids) != len(set(step_ids)):
        raise ValueError(f"Scenario '{scenario_id}' has duplicate step ids.")
    return Scenario(
        id=scenario_id,
        title=title,
        domain=domain,
        difficulty=difficulty,
        description=str(raw.get("description", "")),
        steps=steps,
    )


def _collect_scenarios(entries: list[Traversable] | list[Path]) -> dict[str, Scenario]:
    scenarios: dict[str, Scenario] = {}
    for entry in sorted(entries, key=lambda item: item.name):
        if not entry.name.endswith(".json"):
            continue
        scenario = _scenario_from_dict(_read_json(entry), entry.name)
        if scenario.id in scenarios:
            raise ValueError(f"Duplicate scenario id: {scenario.id}")
        scenarios[scenario.id] = scenario
    return scenarios


def load_scenarios(path: Path | None = None) -> dict[str, Scenario]:
    """Load bundled scenarios, or every scenario JSON in a directory."""
    if path is not None:
        return _collect_scenarios(list(path.glob("*.json")))
    scenarios = _collect_scenarios(list(resources.files(SCENARIO_PACKAGE).iterdir()))
    logger.debug("Loaded %d scenarios", len(scenarios))
    return scenarios


def _question_from_dict(raw: dict[str, Any]) -> ExamQuestion:
    """Build an exam question; true-false answers may be given as booleans."""
    question_id = str(raw.get("id", "")).strip()
    if not question_id:
        raise ValueError("Question has no id.")
    domain = str(raw.get("domain", ""))
    if domain not in DOMAIN_IDS:
        raise ValueError(f"Question '{question_id}' has unknown domain '{domain}'.")
    question_type = str(raw.get("type", ""))
    if question_type not in QUESTION_TYPES:
        raise ValueError(f"Question '{question_id}' has unknown type '{question_type}'.")

    choices = _strings(raw.get("choices"))
    answer = raw.get("correct_answer")
    correct: int | tuple[int, ...]
    if question_type == "true-false":
        choices = choices or TRUE_FALSE_CHOICES
        if isinstance(answer, bool):
            correct = 0 if answer else 1
        elif isinstance(answer, int):
            correct = answer
        else:
            raise ValueError(f"Question '{question_id}' needs a boolean or index answer.")
        indexes: tuple[int, ...] = (correct,)
    elif question_type == "multiple-select":
        if not isinstance(answer, list) or not answer:
            raise ValueError(f"Question '{question_id}' needs a list of answer indexes.")
        correct = tuple(int(item) for item in answer)
        if len(set(correct)) != len(correct):
            raise ValueError(f"Question '{question_id}' repeats an answer index.")
        indexes = correct
    else:
        if isinstance(answer, bool) or not isinstance(answer, int):
            raise ValueError(f"Question '{question_id}' needs an answer index.")
        correct = answer
        indexes = (correct,)

    if len(choices) < 2:
        raise ValueError(f"Question '{question_id}' needs at least two choices.")
    if any(index < 0 or index >= len(choices) for index in indexes):
        raise ValueError(f"Question '{question_id}' answer index out of range.")

    question_text = str(raw.get("question_text", "")).strip()
    if not question_text:
        raise ValueError(f"Question '{question_id}' has no question_text.")
    points = int(raw.get("points", 1))
    if points < 1:
        raise ValueError(f"Question '{question_id}' must be worth at least one point.")
    return ExamQuestion(
        id=question_id,
        domain=domain,
        type=question_type,
        question_text=question_text,
        choices=choices,
        correct_answer=correct,
        points=points,
        explanation=str(raw.get("explanation", "")),
    )


def load_questions(path: Path | None = None) -> list[ExamQuestion]:
    """Load the bundled question bank or a question JSON file."""
    entry = path if path is not None else resources.files(CONTENT_PACKAGE).joinpath(QUESTIONS_FILE)
    raw = _read_json(entry)
    entries = raw.get("questions") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ValueError("Question bank must contain a 'questions' list.")
    questions = [_question_from_dict(item) for item in entries]
    seen: set[str] = set()
    for question in questions:
        if question.id in seen:
            raise ValueError(f"Duplicate question id: {question.id}")
        seen.add(question.id)
    logger.debug("Loaded %d exam questions", len(questions))
    return questions
