"""Fuzzy "did you mean" recovery and objective-driven command hints."""

from __future__ import annotations

import re
from collections.abc import Iterable

from .models import CommandDescriptor
from .registry import CommandRegistry

DEFAULT_THRESHOLD = 0.6
MAX_SIMILAR = 3
MAX_CONTEXTUAL = 5
NAME_MATCH_SCORE = 10
MIN_KEYWORD_LENGTH = 3


def levenshtein(left: str, right: str) -> int:
    """Return edit distance with unit insert, delete, and substitute costs."""
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(left: str, right: str) -> float:
    """Return case-insensitive similarity in [0, 1]; two empty strings are identical."""
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1 - levenshtein(left.lower(), right.lower()) / longest


def find_similar_commands(
    registry: CommandRegistry,
    text: str,
    threshold: float = DEFAULT_THRESHOLD,
    limit: int = MAX_SIMILAR,
) -> list[str]:
    """Return canonical names of the closest non-identical names or aliases."""
    scored: list[tuple[float, str]] = []
    for descriptor in registry.all_commands():
        for candidate in descriptor.all_names():
            ratio = similarity(text, candidate)
            if threshold <= ratio < 1:
                scored.append((ratio, descriptor.name))

    scored.sort(key=lambda pair: pair[0], reverse=True)
    ranked: list[str] = []
    for _, name in scored:
        if name not in ranked:
            ranked.append(name)
        if len(ranked) >= limit:
            break
    return ranked


def did_you_mean_message(
    registry: CommandRegistry,
    text: str,
    threshold: float = DEFAULT_THRESHOLD,
    limit: int = MAX_SIMILAR,
) -> str | None:
    """Render suggestions for an unknown command, or None when nothing is close."""
    matches = find_similar_commands(registry, text, threshold, limit)
    if not matches:
        return None
    if len(matches) == 1:
        return f"Command not found. Did you mean {matches[0]}?"
    lines = ["Command not found. Did you mean one of these?"]
    lines.extend(f"  {name}" for name in matches)
    return "\n".join(lines)


def relevance(descriptor: CommandDescriptor, objective_text: str) -> int:
    """Score a command against lowercase objective text."""
    score = 0
    if descriptor.name.lower() in objective_text:
        score += NAME_MATCH_SCORE
    description = f"{descriptor.description} {descriptor.long_description}".lower()
    for keyword in re.split(r"\s+", objective_text):
        if len(keyword) < MIN_KEYWORD_LENGTH:
            continue
        if keyword in description:
            score += 1
    return score


def contextual_suggestions(
    registry: CommandRegistry,
    objectives: Iterable[str],
    limit: int = MAX_CONTEXTUAL,
) -> list[CommandDescriptor]:
    """Return the commands most relevant to a step's objectives, best first."""
    objective_text = " ".join(objectives).lower()
    scored = [(relevance(descriptor, objective_text), descriptor) for descriptor in registry.all_commands()]
    relevant = [pair for pair in scored if pair[0] > 0]
    # sort is stable, so equal scores keep catalog order
    relevant.sort(key=lambda pair: pair[0], reverse=True)
    return [descriptor for _, descriptor in relevant[:limit]]
