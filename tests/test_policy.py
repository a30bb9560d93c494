from dctrainer.content_loader import load_catalog
from dctrainer.policy import StateEngine
from dctrainer.registry import CommandRegistry


def test_reboot_needs_root_only_when_forced(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.requires_root("reboot", []) is False
    assert engine.requires_root("reboot", ["--force"]) is True
    assert engine.requires_root("reboot", ["-f"]) is True
    assert engine.requires_root("reboot", ["force"]) is True


def test_poweroff_always_needs_root(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.requires_root("poweroff", []) is True
    assert engine.requires_root("shutdown", []) is True


def test_option_flags_marked_root(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.requires_root("nvidia-smi", ["pl"]) is True
    assert engine.requires_root("nvidia-smi", ["--power-limit"]) is True
    assert engine.requires_root("nvidia-smi", ["q"]) is False
    assert engine.requires_root("nvidia-smi", []) is False
    assert engine.flag_requires_root("nvidia-smi", "-pl") is True
    assert engine.flag_requires_root("nvidia-smi", "q") is False


def test_unprivileged_write_and_read_only_commands(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.requires_root("dcgmi", ["r"]) is False
    assert engine.requires_root("sinfo", ["N", "l"]) is False


def test_unknown_command_fails_open(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.requires_root("frobnicate", ["force"]) is False
    assert engine.get_state_interactions("frobnicate") is None
    decision = engine.check("frobnicate", [], is_root=False)
    assert decision.allowed is True


def test_requires_root_is_monotonic_in_flags(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    flag_sets = [[], ["q"], ["f"], ["pl"], ["mig"], ["force", "q"]]
    for command in ("nvidia-smi", "reboot", "poweroff", "sinfo", "dcgmi"):
        for base in flag_sets:
            if engine.requires_root(command, base):
                for extra in flag_sets:
                    assert engine.requires_root(command, [*base, *extra]) is True


def test_written_domains_follow_required_flags(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    assert engine.written_domains("dcgmi", ["r"]) == {"diagnostics"}
    assert engine.written_domains("dcgmi", []) == set()
    assert engine.written_domains("poweroff", []) == {"power"}
    assert engine.written_domains("sinfo", []) == set()


def test_applied_writes_return_declared_accesses(small_registry: CommandRegistry) -> None:
    engine = StateEngine(small_registry)
    writes = engine.applied_writes("nvidia-smi", ["i", "mig"])
    assert [write.state_domain for write in writes] == ["gpu_config"]
    assert engine.applied_writes("nvidia-smi", ["q"]) == []
    assert engine.applied_writes("frobnicate", ["r"]) == []


def test_check_denies_non_root_with_reason(small_registry: CommandRegistry, caplog) -> None:
    engine = StateEngine(small_registry)
    decision = engine.check("reboot", ["force"], is_root=False)
    assert decision.allowed is False
    assert decision.requires_root is True
    assert decision.reason == "reboot: permission denied (are you root?)"
    assert any("root privileges required" in record.getMessage() for record in caplog.records)

    decision = engine.check("reboot", ["force"], is_root=True)
    assert decision.allowed is True
    assert decision.requires_root is True
    assert decision.reason == ""


def test_bundled_catalog_privileges() -> None:
    engine = StateEngine(CommandRegistry(load_catalog()))
    assert engine.requires_root("nvidia-smi", ["mig"]) is True
    assert engine.requires_root("nvidia-smi", ["q"]) is False
    assert engine.requires_root("dmesg", ["C"]) is True
    assert engine.requires_root("dmesg", []) is False
    assert engine.requires_root("modprobe", []) is True
    assert engine.requires_root("sinfo", []) is False
    assert engine.requires_root("dcgmi", ["r"]) is False
