from __future__ import annotations

from typing import Callable, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn


class ProgressUI:
    """Terminal progress for conversions; one bar per file."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console(stderr=True)
        self._progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
            transient=False,
        )

    def __enter__(self) -> "ProgressUI":
        self._progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.stop()

    def track(self, name: str) -> Callable[[int], None]:
        task_id: TaskID = self._progress.add_task(name, total=100)

        def update(value: int) -> None:
            self._progress.update(task_id, completed=value)

        return update

    def write_output(self, text: str) -> None:
        self.console.print(text)

    def write_error(self, text: str) -> None:
        self.console.print(f"[red]{text}[/red]")
