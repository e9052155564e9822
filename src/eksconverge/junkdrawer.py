from __future__ import annotations

import hashlib
import json
import typing

import click


def print_steps(steps: typing.Sequence[tuple[str, typing.Any]]):
    click.secho(
        "∙ " + ("\n∙ ".join([name for name, _ in steps])) + "\n",
        fg="white",
        bold=True,
        err=True,
    )


def print_stage(name: str, detail: str = "", *, ok: bool = True):
    click.secho(f"{'✔' if ok else '✘'} {name}", fg="green" if ok else "red", bold=True, nl=False, err=True)
    click.secho(f" {detail}" if detail else "", err=True)


def filter_steps_after_start(start_at_step: str, steps: list[tuple[str, typing.Any]]) -> list[tuple[str, typing.Any]]:
    if len(steps) == 0:
        return steps

    return steps[[name for (name, step) in steps].index(start_at_step) :]


def json_signature(obj: typing.Any) -> str:
    return hashlib.sha256(
        json.dumps(obj, sort_keys=True).encode(),
        usedforsecurity=False,
    ).hexdigest()


def truncate_name(name: str, limit: int = 64) -> str:
    """IAM role and policy names are capped at 64 characters."""
    if len(name) <= limit:
        return name

    suffix = json_signature(name)[:8]
    return f"{name[: limit - 9]}-{suffix}"
