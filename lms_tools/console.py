"""Tagged console output shared by the maintenance commands."""

from __future__ import annotations

import sys


def log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}")


def warn(tag: str, message: str) -> None:
    print(f"[{tag}] warning: {message}", file=sys.stderr)


def error(tag: str, message: str) -> None:
    print(f"[{tag}] error: {message}", file=sys.stderr)
