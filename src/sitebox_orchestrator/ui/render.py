"""Output rendering abstraction for the sitebox CLI.

File: src/sitebox_orchestrator/ui/render.py

Purpose
- Provide a thin plain-text rendering layer for human-readable CLI output.
- Render sandbox records as detail blocks and listing tables.

Functional requirements
- Plain-text rendering must always work without external dependencies.
- Output is deterministic: fixed field order, no timestamps beyond record fields.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sitebox_orchestrator.domain.errors import RegistryCorruption
    from sitebox_orchestrator.domain.models import Sandbox


class CLIRenderer:
    """Thin CLI output renderer producing clean plain-text output."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        """Print actionable next-step hints."""

        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            print(f"  $ {step}")

    def sandbox(self, record: Sandbox) -> None:
        """Print one sandbox as a detail block."""

        self.heading(f"{record.display_name} ({record.id})")
        self.kv("  Domain", record.domain)
        self.kv("  Status", record.status.value)
        self.kv("  Port", record.port)
        self.kv("  Root", record.root_path)
        self.kv("  Server", record.server_engine.value)
        self.kv("  Runtime", record.runtime_version)
        storage = record.storage_engine_kind.value
        if record.storage_version:
            storage = f"{storage} {record.storage_version}"
        self.kv("  Storage", f"{storage} ({record.storage_backend.value})")
        if record.storage_endpoint is not None:
            endpoint = record.storage_endpoint
            self.kv("  Database", f"{endpoint.user}@{endpoint.host}:{endpoint.port}/{endpoint.database}")
        if record.last_error:
            self.kv("  Last error", record.last_error)
        if self.verbose:
            self.kv("  Created", record.created_at.isoformat())
            self.kv("  Last transition", record.last_transition_at.isoformat())
            self.kv("  Config written", record.config_written_at.isoformat())

    def sandbox_table(self, records: Sequence[Sandbox], issues: Sequence[RegistryCorruption] = ()) -> None:
        """Print a listing of sandboxes followed by unreadable records."""

        if not records:
            self.text("No sandboxes.")
        self.table(
            ["ID", "NAME", "DOMAIN", "STATUS", "PORT", "SERVER", "RUNTIME", "STORAGE"],
            [
                [
                    record.id,
                    record.display_name,
                    record.domain,
                    record.status.value,
                    str(record.port),
                    record.server_engine.value,
                    record.runtime_version,
                    record.storage_engine_kind.value,
                ]
                for record in records
            ],
        )
        if issues:
            self.section("Unreadable records:")
            self.items([f"{issue.sandbox_id or '?'}: {issue.message}" for issue in issues])
            self.next_steps(["sitebox cleanup"])


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
