from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape

_STYLES = {
    "LOG": "green",
    "INFO": "blue",
    "WARNING": "yellow",
    "ERROR": "bold red",
    "SUCCESS": "bold green",
    "CRITICAL": "bold red",
    "HIGH": "red",
    "MEDIUM": "yellow",
    "LOW": "blue",
    "PASS": "green",
}


class OpsLog:
    def __init__(
        self,
        *,
        tool: str,
        log_file: str | Path | None = None,
        quiet: bool = False,
        console: Console | None = None,
    ) -> None:
        self.tool = tool
        self.quiet = quiet
        self.console = console or Console(stderr=True, highlight=False)
        self.log_path = Path(log_file) if log_file else None
        self._file_ok = self.log_path is not None
        self._started = time.time()

    def _append(self, line: str) -> None:
        if not self._file_ok or self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as e:
            self._file_ok = False
            self.console.print(f"[yellow]WARNING:[/yellow] log file {self.log_path} not writable ({e}); console only")

    def emit(self, level: str, msg: str, *, always: bool = False) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._append(f"[{stamp}] {level}: {msg}")
        if self.quiet and not always:
            return
        style = _STYLES.get(level, "white")
        self.console.print(f"[{style}][{stamp}] {level}:[/{style}] {escape(msg)}")

    def log(self, msg: str) -> None:
        self.emit("LOG", msg)

    def info(self, msg: str) -> None:
        self.emit("INFO", msg)

    def warn(self, msg: str) -> None:
        self.emit("WARNING", msg, always=True)

    def error(self, msg: str) -> None:
        self.emit("ERROR", msg, always=True)

    def success(self, msg: str) -> None:
        self.emit("SUCCESS", msg)

    def section(self, title: str) -> None:
        self._append(f"=== {title} ===")
        if not self.quiet:
            self.console.rule(escape(title))

    def wide_event(self, outcome: str, **fields: Any) -> dict[str, Any]:
        event: dict[str, Any] = {
            "kind": "moodle_ops.run",
            "tool": self.tool,
            "outcome": outcome,
            "ts": datetime.now(timezone.utc).isoformat(),
            "durationMs": int((time.time() - self._started) * 1000),
        }
        event.update(fields)
        self._append(json.dumps(event, separators=(",", ":"), sort_keys=True, default=str))
        return event
