"""SQLite persistence for profiles, lab completions, command history, and exam attempts."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1
SNAPSHOT_FORMAT_VERSION = 1
MAX_SNAPSHOT_EXAM_ATTEMPTS = 20


@dataclass(frozen=True)
class Profile:
    """User profile record."""

    id: int
    name: str


@dataclass(frozen=True)
class CommandRecord:
    """One command typed during a lab."""

    scenario_id: str
    step_id: str
    raw_input: str
    accepted: bool
    created_at: str


@dataclass(frozen=True)
class ExamAttempt:
    """Stored result of one practice exam."""

    id: int
    percentage: int
    passed: bool
    time_spent: int
    created_at: str
    by_domain: dict[str, int]


class ProgressStore:
    """Database access layer for learner progress."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize database and schema."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target)
        self._conn.row_factory = sqlite3.Row
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create core tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS step_completions (
                    profile_id INTEGER NOT NULL,
                    scenario_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    commands_used INTEGER NOT NULL,
                    failed_attempts INTEGER NOT NULL,
                    completed_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, scenario_id, step_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS scenario_completions (
                    profile_id INTEGER NOT NULL,
                    scenario_id TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, scenario_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS command_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    profile_id INTEGER NOT NULL,
                    scenario_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    raw_input TEXT NOT NULL,
                    accepted INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS command_proficiency (
                    profile_id INTEGER NOT NULL,
                    command TEXT NOT NULL,
                    success_count INTEGER NOT NULL,
                    PRIMARY KEY (profile_id, command)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS exam_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    profile_id INTEGER NOT NULL,
                    percentage INTEGER NOT NULL,
                    passed INTEGER NOT NULL,
                    time_spent INTEGER NOT NULL,
                    by_domain TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)

    def list_profiles(self) -> list[Profile]:
        """Return profiles ordered by name."""
        rows = self._conn.execute("SELECT id, name FROM profiles ORDER BY name").fetchall()
        return [Profile(id=int(row["id"]), name=str(row["name"])) for row in rows]

    def create_profile(self, name: str) -> Profile:
        """Create a new profile."""
        now = datetime.now(UTC).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO profiles (name, created_at) VALUES (?, ?)",
                (name, now),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Could not create profile.")
        return Profile(id=int(row_id), name=name)

    def get_profile(self, profile_id: int) -> Profile | None:
        """Get one profile by id."""
        row = self._conn.execute("SELECT id, name FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        if row is None:
            return None
        return Profile(id=int(row["id"]), name=str(row["name"]))

    def delete_profile(self, profile_id: int) -> bool:
        """Delete profile and all associated progress data."""
        with self._conn:
            for table in (
                "step_completions",
                "scenario_completions",
                "command_history",
                "command_proficiency",
                "exam_attempts",
            ):
                self._conn.execute(f"DELETE FROM {table} WHERE profile_id = ?", (profile_id,))
            cursor = self._conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        return cursor.rowcount > 0

    def record_step_completion(
        self, profile_id: int, scenario_id: str, step_id: str, commands_used: int, failed_attempts: int
    ) -> None:
        """Store a step completion; the first completion is kept."""
        with self._conn:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO step_completions (
                    profile_id, scenario_id, step_id, commands_used, failed_attempts, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (profile_id, scenario_id, step_id, commands_used, failed_attempts, datetime.now(UTC).isoformat()),
            )

    def mark_scenario_completed(self, profile_id: int, scenario_id: str) -> None:
        """Set scenario completed timestamp if absent."""
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO scenario_completions (profile_id, scenario_id, completed_at) VALUES (?, ?, ?)",
                (profile_id, scenario_id, datetime.now(UTC).isoformat()),
            )

    def completed_step_ids(self, profile_id: int, scenario_id: str) -> set[str]:
        """Return completed step ids for one scenario."""
        rows = self._conn.execute(
            "SELECT step_id FROM step_completions WHERE profile_id = ? AND scenario_id = ?",
            (profile_id, scenario_id),
        ).fetchall()
        return {str(row["step_id"]) for row in rows}

    def completed_scenario_ids(self, profile_id: int) -> set[str]:
        """Return completed scenario ids."""
        rows = self._conn.execute(
            "SELECT scenario_id FROM scenario_completions WHERE profile_id = ?",
            (profile_id,),
        ).fetchall()
        return {str(row["scenario_id"]) for row in rows}

    def record_command(
        self, profile_id: int, scenario_id: str, step_id: str, raw_input: str, command: str, accepted: bool
    ) -> None:
        """Append to command history and count accepted commands toward proficiency."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO command_history (profile_id, scenario_id, step_id, raw_input, accepted, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (profile_id, scenario_id, step_id, raw_input, int(accepted), datetime.now(UTC).isoformat()),
            )
            if accepted and command:
                self._conn.execute(
                    """
                    INSERT INTO command_proficiency (profile_id, command, success_count)
                    VALUES (?, ?, 1)
                    ON CONFLICT(profile_id, command) DO UPDATE SET success_count = success_count + 1
                    """,
                    (profile_id, command),
                )

    def command_history(self, profile_id: int, limit: int = 20) -> list[CommandRecord]:
        """Return most recent commands first."""
        rows = self._conn.execute(
            """
            SELECT scenario_id, step_id, raw_input, accepted, created_at
            FROM command_history
            WHERE profile_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (profile_id, limit),
        ).fetchall()
        return [
            CommandRecord(
                scenario_id=str(row["scenario_id"]),
                step_id=str(row["step_id"]),
                raw_input=str(row["raw_input"]),
                accepted=bool(row["accepted"]),
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]

    def command_proficiency(self, profile_id: int) -> dict[str, int]:
        """Return accepted-command counts by canonical command name."""
        rows = self._conn.execute(
            "SELECT command, success_count FROM command_proficiency WHERE profile_id = ? ORDER BY command",
            (profile_id,),
        ).fetchall()
        return {str(row["command"]): int(row["success_count"]) for row in rows}

    def record_exam_attempt(
        self,
        profile_id: int,
        percentage: int,
        passed: bool,
        time_spent: int,
        by_domain: dict[str, int],
        created_at: str | None = None,
    ) -> None:
        """Store one graded exam."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO exam_attempts (profile_id, percentage, passed, time_spent, by_domain, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    profile_id,
                    percentage,
                    int(passed),
                    time_spent,
                    json.dumps(by_domain, sort_keys=True),
                    created_at or datetime.now(UTC).isoformat(),
                ),
            )

    def list_exam_attempts(self, profile_id: int) -> list[ExamAttempt]:
        """Return exam attempts oldest first."""
        rows = self._conn.execute(
            """
            SELECT id, percentage, passed, time_spent, by_domain, created_at
            FROM exam_attempts
            WHERE profile_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (profile_id,),
        ).fetchall()
        return [
            ExamAttempt(
                id=int(row["id"]),
                percentage=int(row["percentage"]),
                passed=bool(row["passed"]),
                time_spent=int(row["time_spent"]),
                created_at=str(row["created_at"]),
                by_domain={str(key): int(value) for key, value in json.loads(row["by_domain"]).items()},
            )
            for row in rows
        ]

    def export_snapshot(self, profile_id: int) -> dict[str, Any]:
        """Return a JSON-ready snapshot of one profile's progress."""
        step_rows = self._conn.execute(
            "SELECT scenario_id, step_id FROM step_completions WHERE profile_id = ? ORDER BY scenario_id, step_id",
            (profile_id,),
        ).fetchall()
        completed_steps: dict[str, list[str]] = {}
        for row in step_rows:
            completed_steps.setdefault(str(row["scenario_id"]), []).append(str(row["step_id"]))

        attempts = self.list_exam_attempts(profile_id)
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "completed_scenarios": sorted(self.completed_scenario_ids(profile_id)),
            "completed_steps": completed_steps,
            "command_proficiency": self.command_proficiency(profile_id),
            "exam_attempts": [
                {
                    "timestamp": attempt.created_at,
                    "percentage": attempt.percentage,
                    "passed": attempt.passed,
                    "time_spent": attempt.time_spent,
                    "by_domain": attempt.by_domain,
                }
                for attempt in attempts[-MAX_SNAPSHOT_EXAM_ATTEMPTS:]
            ],
            "best_exam_score": max((attempt.percentage for attempt in attempts), default=0),
            "exam_passed": any(attempt.passed for attempt in attempts),
        }

    def apply_snapshot(self, profile_id: int, snapshot: dict[str, Any]) -> None:
        """Write a snapshot into the store without losing existing progress.

        The snapshot is normalized before anything is written, and every row
        goes in one transaction, so a bad snapshot leaves the store untouched.
        """
        snapshot = normalize_snapshot(snapshot)
        now = datetime.now(UTC).isoformat()
        known_attempts = {attempt.created_at for attempt in self.list_exam_attempts(profile_id)}
        with self._conn:
            for scenario_id in snapshot.get("completed_scenarios", []):
                self._conn.execute(
                    "INSERT OR IGNORE INTO scenario_completions (profile_id, scenario_id, completed_at) "
                    "VALUES (?, ?, ?)",
                    (profile_id, str(scenario_id), now),
                )
            for scenario_id, step_ids in snapshot.get("completed_steps", {}).items():
                for step_id in step_ids:
                    self._conn.execute(
                        """
                        INSERT OR IGNORE INTO step_completions (
                            profile_id, scenario_id, step_id, commands_used, failed_attempts, completed_at
                        )
                        VALUES (?, ?, ?, 0, 0, ?)
                        """,
                        (profile_id, str(scenario_id), str(step_id), now),
                    )
            for command, count in snapshot.get("command_proficiency", {}).items():
                self._conn.execute(
                    """
                    INSERT INTO command_proficiency (profile_id, command, success_count)
                    VALUES (?, ?, ?)
                    ON CONFLICT(profile_id, command) DO UPDATE SET
                        success_count = MAX(success_count, excluded.success_count)
                    """,
                    (profile_id, str(command), int(count)),
                )
            for attempt in snapshot.get("exam_attempts", []):
                timestamp = attempt["timestamp"]
                if timestamp in known_attempts:
                    continue
                self._conn.execute(
                    """
                    INSERT INTO exam_attempts (profile_id, percentage, passed, time_spent, by_domain, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        profile_id,
                        attempt["percentage"],
                        int(attempt["passed"]),
                        attempt["time_spent"],
                        json.dumps(attempt["by_domain"], sort_keys=True),
                        timestamp,
                    ),
                )
                known_attempts.add(timestamp)

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()


def _string_list(value: object, field: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"Snapshot field '{field}' must be a list of strings.")
    return list(value)


def _as_int(value: object, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        raise ValueError(f"Snapshot field '{field}' must be a number.")
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Snapshot field '{field}' must be a number.") from exc


def _int_map(value: object, field: str) -> dict[str, int]:
    if not isinstance(value, dict):
        raise ValueError(f"Snapshot field '{field}' must be an object.")
    return {str(key): _as_int(item, f"{field}.{key}") for key, item in value.items()}


def normalize_snapshot(raw: dict[str, Any]) -> dict[str, Any]:
    """Check field shapes and coerce values; raise ValueError naming the first bad field.

    Missing fields fall back to empty values and attempts without a timestamp
    are dropped.
    """
    steps_raw = raw.get("completed_steps", {})
    if not isinstance(steps_raw, dict):
        raise ValueError("Snapshot field 'completed_steps' must be an object.")
    completed_steps = {
        str(scenario_id): _string_list(step_ids, f"completed_steps.{scenario_id}")
        for scenario_id, step_ids in steps_raw.items()
    }

    attempts_raw = raw.get("exam_attempts", [])
    if not isinstance(attempts_raw, list):
        raise ValueError("Snapshot field 'exam_attempts' must be a list.")
    attempts: list[dict[str, Any]] = []
    for index, attempt in enumerate(attempts_raw):
        field = f"exam_attempts[{index}]"
        if not isinstance(attempt, dict):
            raise ValueError(f"Snapshot field '{field}' must be an object.")
        timestamp = attempt.get("timestamp", "")
        if not isinstance(timestamp, str):
            raise ValueError(f"Snapshot field '{field}.timestamp' must be a string.")
        if not timestamp:
            continue
        attempts.append(
            {
                "timestamp": timestamp,
                "percentage": _as_int(attempt.get("percentage", 0), f"{field}.percentage"),
                "passed": bool(attempt.get("passed", False)),
                "time_spent": _as_int(attempt.get("time_spent", 0), f"{field}.time_spent"),
                "by_domain": _int_map(attempt.get("by_domain", {}), f"{field}.by_domain"),
            }
        )

    return {
        "format_version": raw.get("format_version", SNAPSHOT_FORMAT_VERSION),
        "completed_scenarios": _string_list(raw.get("completed_scenarios", []), "completed_scenarios"),
        "completed_steps": completed_steps,
        "command_proficiency": _int_map(raw.get("command_proficiency", {}), "command_proficiency"),
        "exam_attempts": attempts,
        "best_exam_score": _as_int(raw.get("best_exam_score", 0), "best_exam_score"),
        "exam_passed": bool(raw.get("exam_passed", False)),
    }


def _union(first: Iterable[str], second: Iterable[str]) -> list[str]:
    """Union preserving first-seen order."""
    merged: list[str] = []
    for item in [*first, *second]:
        if item not in merged:
            merged.append(item)
    return merged


def merge_snapshots(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """Merge two progress snapshots keeping the best of each.

    Completed sets are unioned, counters and scores take the maximum, and a
    passed exam stays passed. Exam attempts are unioned by timestamp with the
    local copy winning, capped to the most recent entries.
    """
    local_steps: dict[str, list[str]] = local.get("completed_steps", {})
    remote_steps: dict[str, list[str]] = remote.get("completed_steps", {})
    completed_steps = {
        scenario_id: _union(local_steps.get(scenario_id, []), remote_steps.get(scenario_id, []))
        for scenario_id in _union(local_steps, remote_steps)
    }

    local_counts: dict[str, int] = local.get("command_proficiency", {})
    remote_counts: dict[str, int] = remote.get("command_proficiency", {})
    proficiency = {
        command: max(local_counts.get(command, 0), remote_counts.get(command, 0))
        for command in _union(local_counts, remote_counts)
    }

    attempts: dict[str, dict[str, Any]] = {}
    for attempt in [*local.get("exam_attempts", []), *remote.get("exam_attempts", [])]:
        attempts.setdefault(str(attempt.get("timestamp", "")), attempt)
    ordered_attempts = [attempts[key] for key in sorted(attempts)]

    return {
        "format_version": SNAPSHOT_FORMAT_VERSION,
        "completed_scenarios": _union(local.get("completed_scenarios", []), remote.get("completed_scenarios", [])),
        "completed_steps": completed_steps,
        "command_proficiency": proficiency,
        "exam_attempts": ordered_attempts[-MAX_SNAPSHOT_EXAM_ATTEMPTS:],
        "best_exam_score": max(int(local.get("best_exam_score", 0)), int(remote.get("best_exam_score", 0))),
        "exam_passed": bool(local.get("exam_passed", False)) or bool(remote.get("exam_passed", False)),
    }
