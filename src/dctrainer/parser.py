"""Parse raw terminal input into command, subcommands, flags, and positionals."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field

_NUMBER = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class ParsedCommand:
    """Structured form of one command line."""

    raw: str
    command: str
    subcommands: tuple[str, ...] = ()
    flags: dict[str, str | bool] = field(default_factory=dict)
    positionals: tuple[str, ...] = ()

    @property
    def flag_names(self) -> list[str]:
        """Return dash-stripped flag names in input order."""
        return list(self.flags)

    def has_flag(self, *names: str) -> bool:
        """Return whether any of the dash-stripped names was given."""
        return any(name in self.flags for name in names)


def tokenize(command: str) -> tuple[str, ...]:
    """Tokenize shell-like input; unbalanced quotes yield no tokens."""
    try:
        tokens = shlex.split(command.strip(), posix=True)
    except ValueError:
        return ()
    return tuple(tokens)


def _is_flag(token: str) -> bool:
    return token.startswith("-") and len(token) > 1 and token != "--"


def parse_command(raw: str) -> ParsedCommand:
    """Parse one command line.

    Leading bare words become subcommands until the first flag or number.
    ``--name=value`` and ``--name value`` both bind a value; multi-letter short
    flags such as ``-mig`` stay one flag. ``--`` ends flag parsing.
    """
    tokens = tokenize(raw)
    if not tokens:
        return ParsedCommand(raw=raw, command="")

    flags: dict[str, str | bool] = {}
    subcommands: list[str] = []
    positionals: list[str] = []
    stop_flags = False
    in_subcommands = True
    args = tokens[1:]
    index = 0
    while index < len(args):
        token = args[index]
        following = args[index + 1] if index + 1 < len(args) else None
        index += 1

        if token == "--" and not stop_flags:
            stop_flags = True
            continue

        if stop_flags or not _is_flag(token):
            if in_subcommands and "=" not in token and not _NUMBER.match(token):
                subcommands.append(token)
            else:
                in_subcommands = False
                positionals.append(token)
            continue

        in_subcommands = False
        name = token.lstrip("-")
        if token.startswith("--") and "=" in name:
            key, value = name.split("=", 1)
            flags[key] = value
            continue
        if following is not None and not _is_flag(following) and following != "--":
            flags[name] = following
            index += 1
        else:
            flags[name] = True

    return ParsedCommand(
        raw=raw,
        command=tokens[0],
        subcommands=tuple(subcommands),
        flags=flags,
        positionals=tuple(positionals),
    )
