"""Allow ``python -m dctrainer [play] [--config PATH]``."""

from __future__ import annotations

import sys

from .main import run


def main(argv: list[str] | None = None) -> None:
    """Run the CLI and exit with its status."""
    raise SystemExit(run(sys.argv[1:] if argv is None else argv))


if __name__ == "__main__":  # pragma: no cover
    main()
