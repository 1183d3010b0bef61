"""Format script for heartloop."""

import subprocess
import sys
from pathlib import Path


def _paths() -> list[str]:
    return ["heartloop/", "scripts/", *sorted(str(p) for p in Path(".").glob("test_*.py"))]


def main():
    """Run ruff format, then lint fixes, over the package, scripts and tests."""
    targets = _paths()
    steps = [
        ["uv", "run", "ruff", "format", *targets],
        # Whitespace and blank-line cleanups only
        [
            "uv",
            "run",
            "ruff",
            "check",
            "--preview",
            "--fix",
            "--unsafe-fixes",
            "--select",
            "W291,W293,E3",
            *targets,
        ],
        ["uv", "run", "ruff", "check", "--fix", "--ignore", "E501", *targets],
    ]
    try:
        for step in steps:
            subprocess.run(step, check=True)
    except subprocess.CalledProcessError:
        sys.exit(1)


if __name__ == "__main__":
    main()
