import json
import random
from pathlib import Path

import pytest

from dctrainer.config import TrainerConfig
from dctrainer.service import DEFAULT_PREDICATES, LabService


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _service(**kwargs: object) -> LabService:
    return LabService(db_path=":memory:", rng=random.Random(5), **kwargs)  # type: ignore[arg-type]


def test_route_known_command() -> None:
    service = _service()
    decision = service.route("nvidia-smi -q")
    assert decision.allowed is True
    assert decision.descriptor is not None
    assert decision.descriptor.name == "nvidia-smi"
    assert decision.handler == decision.descriptor.handler
    assert decision.message == ""


def test_route_alias_resolves_to_canonical() -> None:
    service = _service()
    decision = service.route("nvidia-bug-report.sh", is_root=True)
    assert decision.descriptor is not None
    assert decision.descriptor.name == "nvidia-bug-report"


def test_route_unknown_command_suggests() -> None:
    service = _service()
    decision = service.route("nvidia-sm -q")
    assert decision.allowed is False
    assert decision.handler is None
    assert decision.message == "nvidia-sm: command not found\nCommand not found. Did you mean nvidia-smi?"

    decision = service.route("qwertyuiop")
    assert decision.message == "qwertyuiop: command not found"


def test_route_empty_input() -> None:
    decision = _service().route("   ")
    assert decision.allowed is False
    assert decision.message == ""
    assert decision.handler is None


def test_route_applies_privilege_policy() -> None:
    service = _service()
    denied = service.route("reboot --force")
    assert denied.allowed is False
    assert denied.requires_root is True
    assert denied.handler is None
    assert denied.message == "reboot: permission denied (are you root?)"

    assert service.route("reboot").allowed is True
    allowed = service.route("reboot --force", is_root=True)
    assert allowed.allowed is True
    assert allowed.handler == "power"


def test_list_scenarios_sorted_by_domain() -> None:
    scenarios = _service().list_scenarios()
    assert [scenario.domain for scenario in scenarios] == ["domain1", "domain2", "domain3", "domain4", "domain5"]


def test_lab_flow_records_progress() -> None:
    service = _service()
    profile = service.create_profile("  alice  ")
    assert profile.name == "alice"
    session = service.start_lab(profile.id, "domain1-server-post")

    turn = service.run_lab_command(session, "ipmitool sensor list")
    assert turn.step_completed is True
    assert turn.result is not None
    assert turn.result.advance is True
    assert session.step_index == 1

    turn = service.run_lab_command(session, "ipmitool sel elist")
    assert turn.step_completed is True
    assert session.step_index == 1
    assert session.advance() is session.scenario.steps[2]

    turn = service.run_lab_command(session, "lspci")
    assert turn.step_completed is True
    assert turn.scenario_completed is True
    assert turn.result is not None
    assert turn.result.score == 0.5

    assert service.completed_scenario_ids(profile.id) == {"domain1-server-post"}
    assert service.progress.completed_step_ids(profile.id, "domain1-server-post") == {
        "check-bmc-sensors",
        "check-event-log",
        "confirm-gpus",
    }
    assert service.progress.command_proficiency(profile.id) == {"ipmitool": 2, "lspci": 1}


def test_lab_rejected_commands_are_logged_but_not_validated() -> None:
    service = _service()
    profile = service.create_profile("bob")
    session = service.start_lab(profile.id, "domain2-mig-setup")
    service.run_lab_command(session, "nvidia-smi -q")
    session.advance()
    assert session.current_step is not None
    assert session.current_step.id == "enable-mig"

    turn = service.run_lab_command(session, "nvidia-smi -i 0 -mig 1")
    assert turn.routing.allowed is False
    assert turn.result is None
    assert session.current_validator is not None
    assert session.current_validator.state.commands_executed == []

    turn = service.run_lab_command(session, "nvidia-smi -i 0 -mig 1", is_root=True)
    assert turn.step_completed is True
    history = service.progress.command_history(profile.id)
    assert [record.accepted for record in history[:2]] == [True, False]


def test_lab_state_and_named_predicate() -> None:
    service = _service()
    profile = service.create_profile("cara")
    session = service.start_lab(profile.id, "domain5-xid-errors")
    session.skip()
    session.skip()
    assert session.current_step is not None
    assert session.current_step.id == "collect-report"

    turn = service.run_lab_command(session, "nvidia-bug-report.sh")
    assert turn.routing.allowed is False
    assert turn.result is None
    assert session.state == {}

    turn = service.run_lab_command(session, "nvidia-bug-report.sh", is_root=True)
    assert turn.step_completed is True
    assert turn.scenario_completed is False
    assert session.state == {"filesystem": {"bug_report": "nvidia-bug-report.sh"}}
    assert service.progress.completed_step_ids(profile.id, "domain5-xid-errors") == {"collect-report"}
    assert service.completed_scenario_ids(profile.id) == set()


def test_caller_state_overrides_session_writes() -> None:
    service = _service()
    session = service.start_lab(1, "domain5-xid-errors")
    session.skip()
    session.skip()
    turn = service.run_lab_command(
        session, "nvidia-bug-report.sh", is_root=True, state={"filesystem": {"bug_report": ""}}
    )
    assert turn.step_completed is False
    assert turn.result is not None
    assert turn.result.feedback == "No bug report archive has been written."


def test_session_state_records_declared_writes_only() -> None:
    service = _service()
    session = service.start_lab(1, "domain2-mig-setup")
    service.run_lab_command(session, "nvidia-smi -q -i 0")
    assert session.state == {}
    session.advance()
    service.run_lab_command(session, "nvidia-smi -i 0 -pl 300", is_root=True)
    assert session.state == {"gpu_config": {"power_limit": "nvidia-smi -i 0 -pl 300"}}
    service.run_lab_command(session, "nvidia-smi -i 0 -mig 1", is_root=True)
    assert session.state["gpu_config"]["mig_mode"] == "nvidia-smi -i 0 -mig 1"


LAB_WALKTHROUGHS = {
    "domain1-server-post": [("ipmitool sensor list", False), ("ipmitool sel elist", False), ("lspci", False)],
    "domain2-mig-setup": [
        ("nvidia-smi -q -i 0", False),
        ("nvidia-smi -i 0 -mig 1", True),
        ("nvidia-smi -q -i 0", False),
    ],
    "domain3-slurm-config": [
        ("sinfo -R", False),
        ("scontrol show node dgx-01", False),
        ("scontrol update nodename=dgx-01 state=resume", False),
    ],
    "domain4-dcgmi-diag": [
        ("dcgmi discovery -l", False),
        ("dcgmi diag -r 1", False),
        ("dcgmi diag -r 2", False),
        ("dcgmi health -c", False),
    ],
    "domain5-xid-errors": [
        ("dmesg | grep -i xid", False),
        ("nvidia-smi -q -d ECC", False),
        ("nvidia-bug-report.sh", True),
    ],
}


def test_every_bundled_scenario_has_a_walkthrough() -> None:
    assert set(LAB_WALKTHROUGHS) == set(_service().scenarios)


@pytest.mark.parametrize("scenario_id", sorted(LAB_WALKTHROUGHS))
def test_bundled_scenario_can_be_completed_from_commands_alone(scenario_id: str) -> None:
    service = _service()
    profile = service.create_profile("walker")
    session = service.start_lab(profile.id, scenario_id)
    last_turn = None
    for raw_input, is_root in LAB_WALKTHROUGHS[scenario_id]:
        last_turn = service.run_lab_command(session, raw_input, is_root=is_root)
        assert last_turn.routing.allowed is True
        if last_turn.step_completed and not last_turn.scenario_completed:
            session.advance()
    assert last_turn is not None
    assert last_turn.scenario_completed is True
    assert service.completed_scenario_ids(profile.id) == {scenario_id}
    step_ids = {step.id for step in session.scenario.steps}
    assert service.progress.completed_step_ids(profile.id, scenario_id) == step_ids


def test_custom_predicates_extend_defaults() -> None:
    service = _service(predicates={"always": lambda state: True})
    assert set(service.predicates) == {*DEFAULT_PREDICATES, "always"}


def test_lab_session_hints_cycle_and_stop_at_last() -> None:
    service = _service()
    session = service.start_lab(1, "domain1-server-post")
    assert session.next_hint() == "The BMC exposes sensor data through IPMI."
    assert session.next_hint() == "Try: ipmitool sensor list"
    assert session.next_hint() == "Try: ipmitool sensor list"
    names = [item.name for item in service.suggested_commands(session)]
    assert names[0] == "ipmitool"


def test_advance_requires_completed_step() -> None:
    service = _service()
    session = service.start_lab(1, "domain1-server-post")
    assert session.advance() is session.scenario.steps[0]
    session.abandon()
    assert session.validators[0].state.phase == "abandoned"


def test_finished_session_ignores_commands() -> None:
    service = _service()
    session = service.start_lab(1, "domain1-server-post")
    for _ in session.scenario.steps:
        session.skip()
    assert session.finished is True
    turn = service.run_lab_command(session, "lspci")
    assert turn.result is None
    assert turn.scenario_completed is False
    assert service.suggested_commands(session) == []


def test_reference_lookups() -> None:
    service = _service()
    assert [item.name for item in service.search_commands("slurm")][:1] == ["sinfo"]
    descriptor = service.describe_command("shutdown")
    assert descriptor is not None
    assert descriptor.name == "poweroff"
    assert service.describe_command("nope") is None


def test_exam_flow_records_attempt() -> None:
    clock = FakeClock()
    service = _service(clock=clock)
    profile = service.create_profile("dana")
    session = service.start_exam()
    assert len(session.questions) == 35
    assert session.timer.running is True

    for question in session.questions:
        session.answer(question.id, question.correct_answer)
    clock.now = 600
    report = service.finish_exam(profile.id, session)
    assert report.passed is True
    assert report.breakdown.percentage == 100
    assert report.breakdown.time_spent == 600
    assert report.weak_domains == ()
    assert report.summary.startswith("Practice exam passed.")

    attempts = service.progress.list_exam_attempts(profile.id)
    assert len(attempts) == 1
    assert attempts[0].percentage == 100
    assert attempts[0].by_domain["domain2"] == 100


def test_exam_uses_configured_size_and_reports_weak_domains() -> None:
    config = TrainerConfig.model_validate({"exam": {"question_count": 10, "passing_score": 80}})
    service = _service(config=config)
    profile = service.create_profile("eli")
    session = service.start_exam()
    assert len(session.questions) == 10
    report = service.finish_exam(profile.id, session)
    assert report.passed is False
    assert report.weak_domains
    assert all(item.questions_total > 0 for item in report.weak_domains)


def test_export_and_merge_progress(tmp_path: Path) -> None:
    source = LabService(db_path=tmp_path / "source.db")
    profile = source.create_profile("fay")
    source.progress.record_step_completion(profile.id, "domain1-server-post", "check-bmc-sensors", 1, 0)
    source.progress.mark_scenario_completed(profile.id, "domain3-slurm-config")
    source.progress.record_exam_attempt(profile.id, 90, True, 1800, {"domain1": 90}, created_at="2026-03-01T00:00:00")
    export_path = tmp_path / "out" / "progress.json"
    summary = source.export_progress(profile.id, export_path)
    assert summary.completed_scenarios == 1
    assert summary.completed_steps == 1
    assert summary.exam_attempts == 1
    payload = json.loads(export_path.read_text(encoding="utf-8"))
    assert payload["profile"] == {"name": "fay"}
    assert payload["format_version"] == 1
    source.close()

    target = LabService(db_path=tmp_path / "target.db")
    other = target.create_profile("fay-laptop")
    target.progress.mark_scenario_completed(other.id, "domain2-mig-setup")
    merged = target.merge_progress(other.id, export_path)
    assert merged.completed_scenarios == 2
    assert merged.exam_attempts == 1
    assert target.completed_scenario_ids(other.id) == {"domain2-mig-setup", "domain3-slurm-config"}

    again = target.merge_progress(other.id, export_path)
    assert again == merged
    target.close()


def test_merge_progress_validates_input(tmp_path: Path) -> None:
    service = _service()
    profile = service.create_profile("gus")
    newer = tmp_path / "newer.json"
    newer.write_text(json.dumps({"format_version": 2}), encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported progress format version"):
        service.merge_progress(profile.id, newer)

    not_object = tmp_path / "list.json"
    not_object.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        service.merge_progress(profile.id, not_object)

    with pytest.raises(KeyError):
        service.merge_progress(999, newer)
    with pytest.raises(KeyError):
        service.export_progress(999, tmp_path / "x.json")


def test_merge_progress_is_all_or_nothing(tmp_path: Path) -> None:
    service = _service()
    profile = service.create_profile("hal")
    snapshot = tmp_path / "partial.json"
    snapshot.write_text(
        json.dumps(
            {
                "format_version": 1,
                "completed_scenarios": ["domain1-server-post"],
                "exam_attempts": [{"timestamp": "t", "percentage": "abc"}],
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="percentage"):
        service.merge_progress(profile.id, snapshot)
    assert service.completed_scenario_ids(profile.id) == set()
    assert service.progress.list_exam_attempts(profile.id) == []
