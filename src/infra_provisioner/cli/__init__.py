"""CLI application for infra-provisioner."""

from __future__ import annotations

import logging
import os
import sys

import typer

from infra_provisioner import __version__

app = typer.Typer(
    name="infra-provisioner",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"infra-provisioner {__version__}")
        raise typer.Exit


# Worker threads apply resources concurrently, so the thread name is logged.
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_AWS_LOGGERS = ("boto3", "botocore", "urllib3")


def _levels(verbose: int) -> tuple[int, int] | None:
    """Return ``(engine level, AWS SDK level)`` for the given flags, or None."""
    env_level = os.environ.get("INFRA_LOG", "").upper()
    if env_level:
        if env_level not in _VALID_LEVELS:
            print(
                f"WARNING: invalid INFRA_LOG level '{env_level}', "
                f"expected one of {', '.join(sorted(_VALID_LEVELS))}; defaulting to INFO",
                file=sys.stderr,
            )
        return getattr(logging, env_level, logging.INFO), logging.WARNING
    if verbose >= 3:
        return logging.DEBUG, logging.DEBUG
    if verbose == 2:
        return logging.DEBUG, logging.WARNING
    if verbose == 1:
        return logging.INFO, logging.WARNING
    return None


def _configure_logging(verbose: int) -> None:
    """Set up stdlib logging from ``-v`` flags or the ``INFRA_LOG`` env var.

    Without either the CLI stays silent. botocore request logging is only
    enabled at ``-vvv``; it logs every HTTP exchange.
    """
    levels = _levels(verbose)
    if levels is None:
        return
    engine_level, aws_level = levels
    logging.basicConfig(
        level=logging.WARNING,
        format=_LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("infra_provisioner").setLevel(engine_level)
    for name in _AWS_LOGGERS:
        logging.getLogger(name).setLevel(aws_level)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug, -vvv debug incl. AWS requests).",
    ),
) -> None:
    """Declarative infrastructure reconciliation for AWS."""
    _ = version
    _configure_logging(verbose)


# Register commands after app is created to avoid circular imports.
from infra_provisioner.cli import commands as _commands  # noqa: E402, F401
