"""CLI entrypoint for the datacenter lab and practice exam trainer."""

from __future__ import annotations

import argparse
import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path

from .config import TrainerConfig
from .exam import ExamSession
from .models import ExamQuestion
from .service import LabService, LabSession

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
BACK_COMMANDS = {":back", ":b", "back"}
MENU_QUIT_COMMANDS = {"q"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
MENU_BACK_COMMANDS = {"b"}
HINT_COMMANDS = {":hint", ":h"}
SKIP_COMMAND = ":skip"
SUDO_PREFIX = "sudo "


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service(config: TrainerConfig | None = None) -> LabService:
    """Create app service from configuration."""
    return LabService(config or TrainerConfig())


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="dctrainer", description="Datacenter command labs and practice exams")
    parser.add_argument("command", nargs="?", default="play", choices=["play"])
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    args = parser.parse_args(argv)
    config = TrainerConfig.from_file(args.config) if args.config is not None else TrainerConfig()
    logging.basicConfig(level=config.log_level, format="%(levelname)s %(name)s: %(message)s")
    return play_shell(config=config)


def play_shell(input_fn: InputFn = input, print_fn: PrintFn = print, config: TrainerConfig | None = None) -> int:
    """Run persistent menu-driven shell."""
    service = _service(config)
    try:
        selected = _select_profile(service, input_fn, print_fn, allow_cancel=False)
        if selected is None:
            return 0
        profile_id, profile_name = selected
        try:
            while True:
                print_fn("\n=== Datacenter Trainer ===")
                print_fn(f"Profile: {profile_name}")
                print_fn("1) Lab scenarios")
                print_fn("2) Practice exam")
                print_fn("3) Command reference")
                print_fn("4) Status")
                print_fn("5) Admin")
                print_fn("b) Back")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _lab_flow(service, profile_id, input_fn, print_fn)
                elif choice == "2":
                    _exam_flow(service, profile_id, input_fn, print_fn)
                elif choice == "3":
                    _reference_flow(service, input_fn, print_fn)
                elif choice == "4":
                    _status_flow(service, profile_id, print_fn)
                elif choice == "5":
                    _admin_flow(service, profile_id, input_fn, print_fn)
                elif choice in MENU_BACK_COMMANDS:
                    switched = _select_profile(service, input_fn, print_fn, allow_cancel=True)
                    if switched is None:
                        return 0
                    profile_id, profile_name = switched
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _select_profile(
    service: LabService, input_fn: InputFn, print_fn: PrintFn, *, allow_cancel: bool
) -> tuple[int, str] | None:
    """Select existing profile or create new one."""
    while True:
        profiles = service.list_profiles()
        print_fn("\n=== Profiles ===")
        if profiles:
            for idx, profile in enumerate(profiles, start=1):
                print_fn(f"{idx}) {profile.name}")
        else:
            print_fn("No profiles yet.")
        print_fn("n) New profile")
        print_fn("d) Delete profile")
        print_fn("q) Quit")

        choice = input_fn("Select profile: ").strip().lower()
        if choice in MENU_QUIT_COMMANDS:
            return None
        if choice == "n":
            name = input_fn("New profile name: ").strip()
            if not name:
                print_fn("Profile name is required.")
                continue
            try:
                created = service.create_profile(name)
            except sqlite3.IntegrityError:
                print_fn("Could not create profile (name may already exist).")
                continue
            return (created.id, created.name)
        if choice == "d":
            _delete_profile_flow(service, input_fn, print_fn)
            continue

        if choice.isdigit():
            index = int(choice) - 1
            if 0 <= index < len(profiles):
                selected = profiles[index]
                return (selected.id, selected.name)

        print_fn("Invalid profile selection.")


def _delete_profile_flow(service: LabService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Delete a profile with explicit confirmation safeguard."""
    profiles = service.list_profiles()
    if not profiles:
        print_fn("No profiles available to delete.")
        return

    print_fn("\nDelete profile")
    for idx, profile in enumerate(profiles, start=1):
        print_fn(f"{idx}) {profile.name}")
    print_fn("b) Back")
    choice = input_fn("Choose profile to delete: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if not choice.isdigit():
        print_fn("Invalid choice.")
        return

    index = int(choice) - 1
    if not (0 <= index < len(profiles)):
        print_fn("Invalid choice.")
        return

    target = profiles[index]
    print_fn(
        f"WARNING: This permanently deletes profile '{target.name}' and all progress "
        "(lab completions, command history, exam attempts)."
    )
    confirm = input_fn("Type YES to confirm deletion: ").strip()
    if confirm != "YES":
        print_fn("Deletion cancelled.")
        return
    if service.delete_profile(target.id):
        print_fn(f"Deleted profile '{target.name}'.")
    else:
        print_fn("Profile was not found.")


def _lab_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Pick a scenario and run it."""
    scenarios = service.list_scenarios()
    if not scenarios:
        print_fn("No lab scenarios available.")
        return
    completed = service.completed_scenario_ids(profile_id)

    print_fn("\n=== Lab Scenarios ===")
    id_width = max(len("Scenario"), max(len(item.id) for item in scenarios))
    header = f"{'#':>2} {'Scenario':<{id_width}} {'Level':<12} {'Status':<9} Title"
    print_fn(header)
    print_fn("-" * len(header))
    for idx, scenario in enumerate(scenarios, start=1):
        status = "completed" if scenario.id in completed else "new"
        print_fn(f"{idx:>2} {scenario.id:<{id_width}} {scenario.difficulty:<12} {status:<9} {scenario.title}")
    print_fn("b) Back")
    print_fn("q) Quit")

    choice = input_fn("Choose scenario: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit():
        print_fn("Invalid choice.")
        return
    index = int(choice) - 1
    if not (0 <= index < len(scenarios)):
        print_fn("Invalid choice.")
        return

    session = service.start_lab(profile_id, scenarios[index].id)
    _run_lab(service, session, input_fn, print_fn)


def _print_step(session: LabSession, print_fn: PrintFn) -> None:
    step = session.current_step
    if step is None:
        return
    print_fn(f"\nStep {session.step_index + 1}/{len(session.scenario.steps)}: {step.title}")
    for objective in step.objectives:
        print_fn(f"- {objective}")


def _run_lab(service: LabService, session: LabSession, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Feed typed commands to the active step until the scenario ends or the learner leaves."""
    print_fn(f"\nStarting lab: {session.scenario.title}")
    if session.scenario.description:
        print_fn(session.scenario.description)
    print_fn("Prefix with 'sudo ' to run as root. Type :hint for a hint, :skip to skip a step, :b or :q to leave.")
    _print_step(session, print_fn)

    while not session.finished:
        user_input = input_fn("$ ").strip()
        lowered = user_input.lower()
        if lowered in BACK_COMMANDS or lowered in FLOW_EXIT_COMMANDS:
            session.abandon()
            print_fn("Leaving lab. Completed steps are saved.")
            return
        if lowered in HINT_COMMANDS:
            _print_hint(service, session, print_fn)
            continue
        if lowered == SKIP_COMMAND:
            session.skip()
            print_fn("Step skipped.")
            _print_step(session, print_fn)
            continue
        if not user_input:
            continue

        is_root = user_input.startswith(SUDO_PREFIX)
        command_text = user_input[len(SUDO_PREFIX) :].strip() if is_root else user_input
        turn = service.run_lab_command(session, command_text, is_root=is_root)
        routing = turn.routing
        if routing.handler is None:
            print_fn(routing.message or "Nothing to run.")
            continue
        print_fn(f"[{routing.handler}] {routing.parsed.raw}")
        result = turn.result
        if result is None:
            continue
        if turn.step_completed:
            print_fn(result.feedback)
            if turn.scenario_completed:
                print_fn(f"Scenario complete: {session.scenario.title}")
                session.advance()
                return
            if not result.advance:
                session.advance()
            _print_step(session, print_fn)
        else:
            print_fn(f"Progress: {result.progress}%  {result.feedback}")

    print_fn("Lab finished. Skipped steps stay open until completed.")


def _print_hint(service: LabService, session: LabSession, print_fn: PrintFn) -> None:
    hint = session.next_hint()
    if hint is not None:
        print_fn(f"Hint: {hint}")
    suggestions = service.suggested_commands(session)
    if suggestions:
        print_fn("Related commands: " + ", ".join(item.name for item in suggestions))
    if hint is None and not suggestions:
        print_fn("No hints for this step.")


def _parse_answer(question: ExamQuestion, text: str) -> int | tuple[int, ...] | None:
    """Convert 1-based typed choices to 0-based answer indexes."""
    parts = [part.strip() for part in text.split(",") if part.strip()]
    if not parts or not all(part.isdigit() for part in parts):
        return None
    indexes = tuple(int(part) - 1 for part in parts)
    if any(index < 0 or index >= len(question.choices) for index in indexes):
        return None
    if question.type == "multiple-select":
        return indexes
    if len(indexes) != 1:
        return None
    return indexes[0]


def _exam_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Run a timed practice exam."""
    session = service.start_exam()
    total = len(session.questions)
    if total == 0:
        print_fn("No exam questions available.")
        return
    shortfall = sum(session.selection.shortfalls.values())
    print_fn("\n=== Practice Exam ===")
    print_fn(f"Questions: {total}  Time limit: {session.timer.format_remaining()}")
    if shortfall:
        print_fn(f"Note: the question bank is {shortfall} question(s) short of a full exam.")
    print_fn("Answer with the choice number; separate several with commas. Type :q to finish early.")

    if _ask_questions(session, input_fn, print_fn):
        report = service.finish_exam(profile_id, session)
        print_fn("")
        print_fn(report.summary)
        if report.weak_domains:
            print_fn("Focus next on: " + ", ".join(item.domain_name for item in report.weak_domains))


def _ask_questions(session: ExamSession, input_fn: InputFn, print_fn: PrintFn) -> bool:
    """Ask every question; returns False when the learner abandons without grading."""
    total = len(session.questions)
    for number, question in enumerate(session.questions, start=1):
        print_fn(f"\nQuestion {number}/{total} [{session.timer.format_remaining()} left]")
        print_fn(question.question_text)
        for idx, choice in enumerate(question.choices, start=1):
            print_fn(f"  {idx}) {choice}")
        while True:
            text = input_fn("Answer: ").strip().lower()
            if text in BACK_COMMANDS:
                session.timer.stop()
                print_fn("Exam abandoned.")
                return False
            if text in FLOW_EXIT_COMMANDS:
                return True
            answer = _parse_answer(question, text)
            if answer is None:
                print_fn("Invalid answer.")
                continue
            if not session.answer(question.id, answer):
                print_fn("Time is up.")
                return True
            break
    return True


def _reference_flow(service: LabService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Browse and search the command catalog."""
    while True:
        print_fn("\n=== Command Reference ===")
        print_fn("1) List commands")
        print_fn("2) Search")
        print_fn("3) Describe command")
        print_fn("b) Back")
        print_fn("q) Quit")
        choice = input_fn("Choose: ").strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        if choice == "1":
            for category, rows in service.registry.help_sections():
                print_fn(f"\n{category.upper()}")
                width = max(len(name) for name, _ in rows)
                for name, description in rows:
                    print_fn(f"  {name:<{width}}  {description}")
        elif choice == "2":
            keyword = input_fn("Keyword: ").strip()
            matches = service.search_commands(keyword) if keyword else []
            if not matches:
                print_fn("No matching commands.")
            for item in matches:
                print_fn(f"- {item.name}: {item.description}")
        elif choice == "3":
            _describe_flow(service, input_fn("Command: ").strip(), print_fn)
        else:
            print_fn("Invalid choice.")


def _describe_flow(service: LabService, name: str, print_fn: PrintFn) -> None:
    """Print one catalog entry, or a fuzzy hint when the name is unknown."""
    descriptor = service.describe_command(name)
    if descriptor is None:
        print_fn(service.route(name).message or "Command not found.")
        return
    print_fn(f"\n{descriptor.name} ({descriptor.category})")
    print_fn(descriptor.long_description or descriptor.description)
    if descriptor.aliases:
        print_fn("Aliases: " + ", ".join(descriptor.aliases))
    for option in descriptor.options:
        marker = " [root]" if option.requires_root else ""
        print_fn(f"  -{option.flag}{marker}  {option.description}")
    for example in descriptor.examples:
        print_fn(f"  $ {example}")


def _status_flow(service: LabService, profile_id: int, print_fn: PrintFn) -> None:
    """Print lab and exam progress with recent command history."""
    print_fn("\n=== Status ===")
    scenarios = service.list_scenarios()
    completed = service.completed_scenario_ids(profile_id)
    print_fn(f"Labs completed: {len(completed)}/{len(scenarios)}")
    for scenario in scenarios:
        done = service.progress.completed_step_ids(profile_id, scenario.id)
        print_fn(f"- {scenario.id}: {len(done)}/{len(scenario.steps)} steps")

    attempts = service.progress.list_exam_attempts(profile_id)
    if attempts:
        best = max(attempt.percentage for attempt in attempts)
        print_fn(f"Exam attempts: {len(attempts)}  Best: {best}%")
    else:
        print_fn("Exam attempts: 0")

    history = service.progress.command_history(profile_id, limit=10)
    if history:
        print_fn("\nRecent commands:")
        for record in history:
            marker = "ok" if record.accepted else "--"
            print_fn(f"  {marker} {record.raw_input}")


def _admin_flow(service: LabService, profile_id: int, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Admin menu for progress export and merge."""
    while True:
        print_fn("\n=== Admin ===")
        print_fn("1) Export progress")
        print_fn("2) Merge progress from file")
        print_fn("b) Back")
        print_fn("q) Quit")
        choice = input_fn("Choose admin option: ").strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        if choice not in ("1", "2"):
            print_fn("Invalid choice.")
            continue
        path_text = input_fn("File path: ").strip()
        if not path_text:
            print_fn("File path is required.")
            continue
        try:
            if choice == "1":
                summary = service.export_progress(profile_id, path_text)
                print_fn(f"Exported progress to {path_text}")
            else:
                summary = service.merge_progress(profile_id, path_text)
                print_fn(f"Merged progress from {path_text}")
        except (OSError, ValueError, KeyError) as exc:
            print_fn(f"Transfer failed: {exc}")
            continue
        print_fn(f"- completed scenarios: {summary.completed_scenarios}")
        print_fn(f"- completed steps: {summary.completed_steps}")
        print_fn(f"- exam attempts: {summary.exam_attempts}")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
