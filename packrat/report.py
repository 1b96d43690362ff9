"""Error types and JSON report generation for unpack runs."""

import json
from datetime import datetime, timezone


class PackratError(Exception):
    """Raised for reportable runtime failures that stop the current command."""


class ConfigError(PackratError):
    """Raised for invalid configuration (bad TOML, wrong types, missing model)."""


class WorkspaceError(PackratError):
    """Raised when the working directory cannot be used at all."""


class LLMError(PackratError):
    """Raised when the model provider call fails."""


class ReportCollector:
    """Accumulates events during an unpack run for the tally and JSON report."""

    def __init__(self):
        self.events: list[dict] = []
        self.written = 0
        self.dry_written = 0
        self.bytes_written = 0
        self.commands = 0
        self.command_errors = 0
        self.unknown_commands = 0
        self.write_errors = 0
        self.scan_errors = 0
        self.validation: bool | None = None

    @property
    def errors(self) -> int:
        return self.command_errors + self.write_errors + self.scan_errors

    def record_write(self, line: int, filename: str, size: int, *, dry: bool):
        if dry:
            self.dry_written += 1
        else:
            self.written += 1
            self.bytes_written += size
        self.events.append(
            {
                "index": line,
                "type": "dry_write" if dry else "write",
                "filename": filename,
                "bytes": size,
            }
        )

    def record_write_error(self, line: int, filename: str, error: str):
        self.write_errors += 1
        self.events.append(
            {"index": line, "type": "write_error", "filename": filename, "error": error}
        )

    def record_command(self, line: int, name: str, succeeded: bool):
        self.commands += 1
        if not succeeded:
            self.command_errors += 1
        self.events.append(
            {"index": line, "type": "command", "name": name, "succeeded": succeeded}
        )

    def record_unknown_command(self, line: int, name: str):
        self.unknown_commands += 1
        self.events.append({"index": line, "type": "unknown_command", "name": name})

    def record_scan_errors(self, count: int):
        self.scan_errors += count

    def record_validation(self, verdict: bool):
        # Several @validate blocks must all pass.
        self.validation = verdict if self.validation is None else (
            self.validation and verdict
        )

    @property
    def ok(self) -> bool:
        """Overall verdict: every signal that is present must pass."""
        if self.errors:
            return False
        return self.validation is not False

    def tally(self) -> str:
        files = f"{self.written} written"
        if self.dry_written:
            files += f", {self.dry_written} dry"
        return (
            f"Files: {files}, {self.write_errors} failed; "
            f"commands: {self.commands} run, {self.unknown_commands} unknown; "
            f"errors: {self.errors}"
        )

    def build_report(self, *, source: str, base_dir: str, dry: bool) -> dict:
        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "base_dir": base_dir,
            "dry": dry,
            "result": {
                "outcome": "success" if self.ok else "failure",
                "validation": self.validation,
            },
            "stats": {
                "files_written": self.written,
                "files_dry": self.dry_written,
                "bytes_written": self.bytes_written,
                "write_errors": self.write_errors,
                "commands": self.commands,
                "command_errors": self.command_errors,
                "unknown_commands": self.unknown_commands,
                "scan_errors": self.scan_errors,
            },
            "timeline": self.events,
        }

    def write(self, path: str, **kwargs):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.build_report(**kwargs), f, indent=2)
            f.write("\n")
