"""CLI entry point for the BLT transfer service."""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import click
import httpx

from blt import __version__
from blt.config import ServiceConfig, load_config
from blt.utils.logging import configure_logging, get_logger
from blt.utils.result import ExitCode

if TYPE_CHECKING:
    import uvicorn

DEFAULT_SERVICE_URL = "http://127.0.0.1:8000"


class Context:
    """Loaded configuration handed to every subcommand."""

    def __init__(self, config: ServiceConfig, config_path: Optional[Path]) -> None:
        self.config = config
        self.config_path = config_path
        self.logger = get_logger("cli")


pass_context = click.make_pass_decorator(Context)


def output_json(data: object) -> None:
    """Print a JSON document for scripts to consume."""
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to YAML config file (default: $BLT_CONFIG or ./blt.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default=None,
    help="Logging level (overrides the config file)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    default=None,
    help="Log format (overrides the config file)",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """
    BLT study transfer - retrieve, anonymize and push studies via Orthanc.

    Each request finds a study on the source modality by AccessionNumber,
    retrieves it into the archive, anonymizes it with caller-supplied values
    and pushes the anonymized copy to the destination peer.
    """
    result = load_config(config_path)
    if result.is_err():
        # Logging is not configured from the file yet
        configure_logging(level=log_level or "info", format_type=log_format or "json")
        error = result.unwrap_err()
        get_logger("cli").error("config_invalid", field=error.field, error=error.message)
        output_json(error.to_dict())
        ctx.exit(ExitCode.CONFIG_INVALID)

    config = result.unwrap()
    if log_level:
        config.logging.level = log_level
    if log_format:
        config.logging.format = log_format
    configure_logging(level=config.logging.level, format_type=config.logging.format)

    ctx.obj = Context(config=config, config_path=config_path)


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides the config file)")
@click.option("--port", type=int, default=None, help="Port (overrides the config file)")
@click.option(
    "--skip-guards",
    is_flag=True,
    default=False,
    help="Start even if the archive is not reachable",
)
@pass_context
def serve(
    ctx: Context,
    host: Optional[str],
    port: Optional[int],
    skip_guards: bool,
) -> None:
    """Run the HTTP API and the job poller."""
    import uvicorn

    config = ctx.config
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    if not skip_guards:
        code = asyncio.run(_run_guards(config))
        if code != ExitCode.SUCCESS:
            sys.exit(code)

    ctx.logger.info(
        "serve_started",
        host=config.server.host,
        port=config.server.port,
        archive_url=config.archive.url,
    )
    uvicorn.Server(uvicorn_config(config)).run()


def uvicorn_config(config: ServiceConfig) -> uvicorn.Config:
    """
    Server settings for the service.

    uvicorn installs no handlers of its own; its records propagate to the
    root handler set up by configure_logging and share the service's format.
    """
    import uvicorn

    from blt.api import create_app

    level = config.logging.level
    return uvicorn.Config(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_config=None,
        log_level="warning" if level == "warn" else level,
    )


async def _run_guards(config: ServiceConfig) -> int:
    from blt.archive import OrthancArchiveClient
    from blt.runner import StartupGuards

    async with OrthancArchiveClient(config.archive) as client:
        result = await StartupGuards(config, client).check_all()

    if result.is_err():
        error = result.unwrap_err()
        output_json(error.to_dict())
        return error.code
    return ExitCode.SUCCESS


@cli.command()
@click.option(
    "--probe",
    is_flag=True,
    default=False,
    help="Also check that the archive is reachable and configured",
)
@pass_context
def check(ctx: Context, probe: bool) -> None:
    """Validate the configuration and show the effective values."""
    if probe:
        code = asyncio.run(_run_guards(ctx.config))
        if code != ExitCode.SUCCESS:
            sys.exit(code)

    output_json({
        "status": "success",
        "config_path": str(ctx.config_path) if ctx.config_path else None,
        "config": asdict(ctx.config),
    })


@cli.command()
@click.argument("request_id", required=False)
@click.option("--url", default=DEFAULT_SERVICE_URL, help="URL of a running service")
@pass_context
def status(ctx: Context, request_id: Optional[str], url: str) -> None:
    """Show all requests of a running service, or one of them."""
    path = f"/blt/studies/{request_id}" if request_id else "/blt/studies"
    code = _call_service(ctx, "GET", url, path)
    if code != ExitCode.SUCCESS:
        sys.exit(code)


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, path_type=Path))
@click.option("--url", default=DEFAULT_SERVICE_URL, help="URL of a running service")
@pass_context
def submit(ctx: Context, request_file: Path, url: str) -> None:
    """Submit the BLT request stored in REQUEST_FILE (JSON)."""
    try:
        body = json.loads(request_file.read_text())
    except (OSError, ValueError) as e:
        output_json({"status": "error", "message": f"Cannot read {request_file}: {e}"})
        sys.exit(ExitCode.GENERAL_ERROR)

    code = _call_service(ctx, "POST", url, "/blt/studies", body)
    if code != ExitCode.SUCCESS:
        sys.exit(code)


@cli.command()
@click.argument("request_id")
@click.option("--reason", default="abandoned by operator", help="Recorded with the request")
@click.option("--url", default=DEFAULT_SERVICE_URL, help="URL of a running service")
@pass_context
def abandon(ctx: Context, request_id: str, reason: str, url: str) -> None:
    """Stop polling a request."""
    code = _call_service(
        ctx, "DELETE", url, f"/blt/studies/{request_id}", params={"reason": reason}
    )
    if code != ExitCode.SUCCESS:
        sys.exit(code)


def _call_service(
    ctx: Context,
    method: str,
    url: str,
    path: str,
    body: Optional[dict] = None,
    params: Optional[dict] = None,
) -> int:
    """Call a running service and print its answer."""
    try:
        response = httpx.request(
            method,
            url.rstrip("/") + path,
            json=body,
            params=params,
            timeout=ctx.config.archive.timeout,
        )
    except httpx.HTTPError as e:
        ctx.logger.error("service_unreachable", url=url, error=str(e))
        output_json({"status": "error", "message": f"Cannot reach {url}: {e}"})
        return ExitCode.SERVICE_UNREACHABLE

    try:
        output_json(response.json())
    except ValueError:
        click.echo(response.text)

    if response.status_code >= 400:
        return ExitCode.REQUEST_REJECTED
    return ExitCode.SUCCESS


def main() -> None:
    """Entry point of the `blt` console script."""
    try:
        cli()
    except Exception as e:
        logger = get_logger("cli")
        logger.error("cli_error", error=str(e))
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()
