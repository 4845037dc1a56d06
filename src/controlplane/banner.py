"""Operator-facing banners and progress indicators."""

from __future__ import annotations

import click

__all__ = ["print_banner", "report_progress"]

BANNER_WIDTH = 87

_COLORS = {
    "error": {"fg": "red", "bold": True},
    "success": {"fg": "green", "bold": True},
    "info": {"fg": "cyan", "bold": True},
}


def _center(text: str) -> str:
    return f"#{text.center(BANNER_WIDTH)}#"


def print_banner(title: str, message: str, kind: str = "info") -> None:
    """Print a framed, colored banner (info cyan, success green, error red)."""
    style = _COLORS.get(kind, _COLORS["info"])
    border = "#" * (BANNER_WIDTH + 2)
    blank = _center("")
    lines = ["", border, blank, _center(title), blank]
    lines.extend(_center(part.strip()) for part in message.split("\n") if part.strip())
    lines.extend([blank, border, ""])
    click.echo(click.style("\n".join(lines), **style), err=kind == "error")


def report_progress(percent: int, ado: bool = False) -> None:
    """Emit a progress indicator, as an Azure DevOps logging command when in a pipeline."""
    if ado:
        click.echo(f"##vso[task.setprogress value={percent};]Progress Indicator")
    else:
        click.echo(f"Progress Indicator: {percent}% done")
