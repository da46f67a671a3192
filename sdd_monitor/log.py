"""Timestamped diagnostic lines on stderr."""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.markup import escape

console = Console(stderr=True, highlight=False)


def log(message: str, style: str | None = None):
    text = escape(str(message).rstrip("\n"))
    if not text:
        return
    stamp = datetime.now().strftime("%H:%M:%S")
    if style:
        console.print(f"[dim]{stamp}[/]  [{style}]{text}[/]")
    else:
        console.print(f"[dim]{stamp}[/]  {text}")


def warn(message: str):
    log(message, style="yellow")


def error(message: str):
    log(message, style="red")
