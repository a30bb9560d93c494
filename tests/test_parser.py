from dctrainer.parser import parse_command, tokenize


def test_parse_short_flags_with_values() -> None:
    parsed = parse_command("nvidia-smi -i 0 -mig 1")
    assert parsed.command == "nvidia-smi"
    assert parsed.flags == {"i": "0", "mig": "1"}
    assert parsed.flag_names == ["i", "mig"]
    assert parsed.subcommands == ()


def test_parse_boolean_long_flag() -> None:
    parsed = parse_command("reboot --force")
    assert parsed.flags == {"force": True}
    assert parsed.has_flag("force", "f") is True
    assert parsed.has_flag("f") is False


def test_parse_subcommands_and_positionals() -> None:
    parsed = parse_command("scontrol update NodeName=dgx-01 State=RESUME")
    assert parsed.command == "scontrol"
    assert parsed.subcommands == ("update",)
    assert parsed.positionals == ("NodeName=dgx-01", "State=RESUME")

    parsed = parse_command("ipmitool sel elist")
    assert parsed.subcommands == ("sel", "elist")
    assert parsed.flags == {}


def test_parse_equals_binding_and_double_dash() -> None:
    parsed = parse_command("journalctl --unit=slurmd -- -b")
    assert parsed.flags == {"unit": "slurmd"}
    assert parsed.positionals == ("-b",)


def test_parse_quoted_arguments() -> None:
    parsed = parse_command('srun -N 2 "hostname -s"')
    assert parsed.command == "srun"
    assert parsed.flags == {"N": "2"}
    assert parsed.positionals == ("hostname -s",)


def test_parse_empty_and_unbalanced_input() -> None:
    assert parse_command("").command == ""
    assert parse_command("   ").command == ""
    assert tokenize('echo "unterminated') == ()
    assert parse_command('echo "unterminated').command == ""


def test_numbers_end_subcommands() -> None:
    parsed = parse_command("dcgmi diag -r 1")
    assert parsed.subcommands == ("diag",)
    assert parsed.flags == {"r": "1"}
