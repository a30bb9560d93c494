from __future__ import annotations

import shutil
import sys
from collections.abc import Iterator
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from dctrainer.models import (  # noqa: E402
    CommandDescriptor,
    CommandOption,
    StateAccess,
    StateInteraction,
)
from dctrainer.registry import CommandRegistry  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide a per-test scratch directory under ``.tmp_pytest/`` in the project root.

    Overrides pytest's builtin ``tmp_path`` so progress databases and exported
    snapshots stay inside the working tree.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


def make_command(name: str, category: str = "linux", **kwargs: object) -> CommandDescriptor:
    """Build a descriptor with sensible defaults for tests."""
    return CommandDescriptor(
        name=name,
        category=category,
        description=str(kwargs.pop("description", f"{name} command")),
        handler=str(kwargs.pop("handler", name)),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def small_registry() -> CommandRegistry:
    """Registry with a privileged GPU tool, a power command, and a read-only command."""
    return CommandRegistry(
        [
            make_command(
                "nvidia-smi",
                "nvidia",
                description="GPU management and monitoring",
                options=(
                    CommandOption(flag="pl", aliases=("power-limit",), requires_root=True),
                    CommandOption(flag="q", aliases=("query",)),
                ),
                state_interactions=StateInteraction(
                    writes_to=(
                        StateAccess(
                            state_domain="gpu_config",
                            requires_privilege="root",
                            requires_flags=("-pl", "-mig"),
                        ),
                    ),
                ),
            ),
            make_command(
                "reboot",
                "system",
                options=(CommandOption(flag="force", aliases=("f",)),),
                state_interactions=StateInteraction(
                    writes_to=(
                        StateAccess(state_domain="power", requires_privilege="root", requires_flags=("--force", "-f")),
                    ),
                ),
            ),
            make_command(
                "poweroff",
                "system",
                aliases=("shutdown",),
                state_interactions=StateInteraction(
                    writes_to=(StateAccess(state_domain="power", requires_privilege="root"),),
                ),
            ),
            make_command("sinfo", "cluster", description="Show Slurm partition and node state"),
            make_command(
                "dcgmi",
                "nvidia",
                description="Data center GPU manager diagnostics",
                state_interactions=StateInteraction(
                    writes_to=(StateAccess(state_domain="diagnostics", requires_flags=("-r",)),),
                ),
            ),
        ]
    )
