from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import typer
from pydantic import ValidationError

from .client import SignatureClient
from .config import Settings
from .errors import ApiError

app = typer.Typer(no_args_is_help=True, add_completion=False)


def _load_settings() -> Settings:
    try:
        return Settings()
    except Exception as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2)


def _run(settings: Settings, op) -> Any:
    async def _main() -> Any:
        async with SignatureClient(settings) as client:
            return await op(client)

    try:
        return asyncio.run(_main())
    except ApiError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    except ValidationError as e:
        typer.echo(f"Unexpected response payload: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def health(
        probe: str = typer.Option("full", help="Which probe to call: full, ready or live"),
) -> None:
    """Query the API health endpoints."""
    settings = _load_settings()
    ops = {
        "full": lambda c: c.health_check(),
        "ready": lambda c: c.health_check_ready(),
        "live": lambda c: c.health_check_live(),
    }
    if probe not in ops:
        typer.echo(f"Unknown probe: {probe}", err=True)
        raise typer.Exit(code=2)
    result = _run(settings, ops[probe])
    typer.echo(result.model_dump_json(indent=2, by_alias=True))


@app.command()
def me() -> None:
    """Show the user the configured token belongs to."""
    settings = _load_settings()
    user = _run(settings, lambda c: c.get_current_user())
    typer.echo(user.model_dump_json(indent=2, by_alias=True))


@app.command()
def get(
        path: str = typer.Argument(..., help="API path, e.g. /api/v1/envelopes"),
        show_meta: bool = typer.Option(False, "--meta", help="Print request id and cache metadata"),
) -> None:
    """GET an arbitrary API path through the retrying transport."""
    settings = _load_settings()
    resp = _run(settings, lambda c: c.transport.get(path))
    if show_meta:
        meta = {
            "status": resp.status_code,
            "request_id": resp.request_id,
            "from_cache": resp.from_cache,
            "etag": resp.etag,
            "last_modified": resp.last_modified,
        }
        typer.echo(json.dumps(meta, indent=2), err=True)
    typer.echo(json.dumps(resp.data, indent=2) if not isinstance(resp.data, str) else resp.data)


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
