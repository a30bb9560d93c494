"""Runtime index over the command catalog: names, aliases, and categories."""

from __future__ import annotations

from collections.abc import Iterable

from .models import COMMAND_CATEGORIES, CommandDescriptor

HELP_CATEGORY_ORDER = ("nvidia", "bmc", "cluster", "container", "network", "diagnostic", "linux", "system", "other")


class RegistrationError(ValueError):
    """A command could not be registered."""


class DuplicateNameError(RegistrationError):
    """Canonical command name collides with an existing name or alias."""


class DuplicateAliasError(RegistrationError):
    """Alias collides with an existing name or alias."""


class CommandRegistry:
    """Resolve command names and aliases to catalog descriptors.

    One registry is owned per session root; nothing here is process-global,
    so independent sessions and tests never see each other's registrations.
    """

    def __init__(self, descriptors: Iterable[CommandDescriptor] = ()) -> None:
        """Initialize empty indexes and register initial descriptors."""
        self._commands: dict[str, CommandDescriptor] = {}
        self._aliases: dict[str, str] = {}
        self._categories: dict[str, list[str]] = {category: [] for category in COMMAND_CATEGORIES}
        self.register_many(descriptors)

    def register(self, descriptor: CommandDescriptor) -> None:
        """Register one command; raise without mutating on any name clash."""
        self._check_available(descriptor, taken=set())
        self._index(descriptor)

    def register_many(self, descriptors: Iterable[CommandDescriptor]) -> None:
        """Register a batch atomically: either every command is added or none."""
        batch = list(descriptors)
        taken: set[str] = set()
        for descriptor in batch:
            self._check_available(descriptor, taken)
            taken.update(descriptor.all_names())
        for descriptor in batch:
            self._index(descriptor)

    def _check_available(self, descriptor: CommandDescriptor, taken: set[str]) -> None:
        if descriptor.category not in self._categories:
            raise RegistrationError(f"Command '{descriptor.name}' has unknown category '{descriptor.category}'.")
        if self.has(descriptor.name) or descriptor.name in taken:
            raise DuplicateNameError(f"Command '{descriptor.name}' is already registered.")
        seen = {descriptor.name}
        for alias in descriptor.aliases:
            if alias in self._commands or alias in seen or alias in taken:
                raise DuplicateAliasError(f"Alias '{alias}' conflicts with an existing command.")
            if alias in self._aliases:
                raise DuplicateAliasError(f"Alias '{alias}' is already registered.")
            seen.add(alias)

    def _index(self, descriptor: CommandDescriptor) -> None:
        self._commands[descriptor.name] = descriptor
        for alias in descriptor.aliases:
            self._aliases[alias] = descriptor.name
        self._categories[descriptor.category].append(descriptor.name)

    def resolve(self, name: str) -> CommandDescriptor | None:
        """Return descriptor by canonical name, then alias; None when unknown."""
        direct = self._commands.get(name)
        if direct is not None:
            return direct
        primary = self._aliases.get(name)
        if primary is not None:
            return self._commands.get(primary)
        return None

    def has(self, name: str) -> bool:
        """Return whether a name or alias is registered."""
        return name in self._commands or name in self._aliases

    def all_commands(self) -> list[CommandDescriptor]:
        """Return descriptors in registration order."""
        return list(self._commands.values())

    def all_names(self) -> list[str]:
        """Return canonical names followed by aliases."""
        return [*self._commands, *self._aliases]

    def by_category(self, category: str) -> list[CommandDescriptor]:
        """Return descriptors registered under one category."""
        return [self._commands[name] for name in self._categories.get(category, [])]

    def categories(self) -> list[str]:
        """Return all known categories."""
        return list(self._categories)

    def unregister(self, name: str) -> bool:
        """Remove a command with its aliases and category membership."""
        descriptor = self._commands.pop(name, None)
        if descriptor is None:
            return False
        for alias in descriptor.aliases:
            self._aliases.pop(alias, None)
        members = self._categories[descriptor.category]
        if name in members:
            members.remove(name)
        return True

    def clear(self) -> None:
        """Drop every registration."""
        self._commands.clear()
        self._aliases.clear()
        for members in self._categories.values():
            members.clear()

    def stats(self) -> dict[str, object]:
        """Return registration counts."""
        return {
            "total_commands": len(self._commands),
            "total_aliases": len(self._aliases),
            "commands_by_category": {category: len(names) for category, names in self._categories.items()},
        }

    def search(self, keyword: str) -> list[CommandDescriptor]:
        """Case-insensitive substring search over names, descriptions, and aliases."""
        needle = keyword.lower()
        return [
            descriptor
            for descriptor in self._commands.values()
            if needle in descriptor.name.lower()
            or needle in descriptor.description.lower()
            or any(needle in alias.lower() for alias in descriptor.aliases)
        ]

    def suggestions(self, prefix: str, limit: int = 10) -> list[str]:
        """Return sorted names and aliases starting with prefix, for autocomplete."""
        lowered = prefix.lower()
        matches = [name for name in self.all_names() if name.lower().startswith(lowered)]
        return sorted(matches)[:limit]

    def help_sections(self) -> list[tuple[str, list[tuple[str, str]]]]:
        """Return non-empty categories with (name, description) rows in display order."""
        sections: list[tuple[str, list[tuple[str, str]]]] = []
        for category in HELP_CATEGORY_ORDER:
            rows = [(item.name, item.description) for item in self.by_category(category)]
            if rows:
                sections.append((category, rows))
        return sections
