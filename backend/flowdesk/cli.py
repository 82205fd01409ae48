"""Maintenance commands exposed through ``flask``."""

from __future__ import annotations

import click
from flask import Flask, current_app

from .errors import ValidationError
from .services import audit, runtime
from .utils.clock import parse_datetime


def _datetime_option(value: str | None, name: str):
    try:
        return parse_datetime(value, name=name)
    except ValidationError as exc:
        raise click.BadParameter(exc.message, param_hint=f"--{name}") from exc


def register_commands(app: Flask) -> None:
    @app.cli.command("sweep-timeouts")
    @click.option("--batch", type=int, default=None, help="Maximum number of instances to inspect.")
    def sweep_timeouts_command(batch: int | None) -> None:
        """Apply overdue task timeouts and workflow expiry."""

        result = runtime.sweep_timeouts(batch=batch)
        current_app.logger.info(
            "Timeout sweep inspected %s instances: %s timed out, %s expired, %s skipped",
            result.instances,
            result.timed_out,
            result.expired,
            len(result.skipped),
        )
        click.echo(
            f"instances={result.instances} timedOut={result.timed_out} "
            f"expired={result.expired} skipped={len(result.skipped)}"
        )

    @app.cli.command("purge-audit")
    @click.option("--before", "before", required=True, help="Delete entries older than this ISO timestamp.")
    def purge_audit_command(before: str) -> None:
        """Delete audit entries older than a cutoff."""

        cutoff = _datetime_option(before, "before")
        deleted = audit.purge_before(cutoff)
        click.echo(f"deleted={deleted}")

    @app.cli.command("export-audit")
    @click.option("--from", "start", default=None, help="Earliest timestamp to include.")
    @click.option("--to", "end", default=None, help="Latest timestamp to include.")
    @click.option(
        "--output",
        type=click.File("w", encoding="utf-8"),
        default="-",
        help="File to write to, defaults to stdout.",
    )
    def export_audit_command(start: str | None, end: str | None, output) -> None:
        """Write the audit trail as newline delimited JSON."""

        lines = audit.export_ndjson(
            start=_datetime_option(start, "from"),
            end=_datetime_option(end, "to"),
        )
        count = 0
        for line in lines:
            output.write(line)
            count += 1
        current_app.logger.info("Exported %s audit entries", count)
