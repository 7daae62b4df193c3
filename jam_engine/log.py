"""key=value event lines written through click."""

from datetime import datetime, timezone

import click


def _fmt(value) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace('"', "'")
    return f'"{text}"'


def format_fields(fields: dict) -> str:
    return " ".join(f"{key}={_fmt(value)}" for key, value in fields.items())


def echo(**fields):
    click.echo(format_fields(fields))


def warn(**fields):
    click.echo(format_fields({"level": "warn", **fields}), err=True)


def error(**fields):
    click.echo(format_fields({"level": "error", **fields}), err=True)


def iso_now(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
