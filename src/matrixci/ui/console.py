"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        event: str,
        ref: str,
        cell_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Event: {event}")
        print(f"Ref: {ref}")
        print(f"Cells: {cell_count}")
        print()

    # Cell lines are single prints prefixed with the cell label, since
    # cells run concurrently and multi-line blocks would interleave.

    def print_cell_start(self, label: str) -> None:
        print(f"[{label}] CELL STARTED")

    def print_step(self, label: str, step: str) -> None:
        print(f"[{label}] STEP: {step}")

    def print_step_skipped(self, label: str, step: str, reason: str) -> None:
        print(f"[{label}] STEP SKIPPED: {step} ({reason})")

    def print_step_failure(
        self,
        label: str,
        step: str,
        exit_code: int,
        fatal: bool,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print step failure message.

        Args:
            label: Cell label
            step: Step name
            exit_code: Exit code of the step
            fatal: If True, forward steps of the cell are abandoned
            hint: Optional hint for user
        """
        kind = "fatal" if fatal else "recorded"
        line = f"[{label}] STEP FAILED: {step} (exit={exit_code}, {kind})"
        if hint:
            line += f" hint: {hint}"
        print(line)

    def print_cell_done(self, label: str, outcome: str) -> None:
        print(f"[{label}] CELL {outcome.upper()}")

    def print_warning(self, message: str) -> None:
        """Print a best-effort failure that does not change any outcome."""
        print(f"WARNING: {message}", file=sys.stderr)

    def print_plan_cell(self, label: str, names: list[str]) -> None:
        """Print one expanded cell with its artifact names."""
        print(f"  {label}")
        for n in names:
            print(f"      {n}")

    def print_published(self, label: str, bundle: str, uploaded: list[str]) -> None:
        print(f"[{label}] PUBLISHED {bundle}: {', '.join(uploaded)}")

    def print_results(self, results: dict[str, str], outcome: str) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for cell, status in results.items():
            print(f"  {cell}: {status.upper()}")
        print(f"PIPELINE: {outcome.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
