"""
CLI interface for stackweave.

    stackweave deploy                     deploy every service
    stackweave remove --stage prod        remove every service, dependents first
    stackweave logs --tail                tail logs of every service
    stackweave api:deploy                 deploy one service
    stackweave print --service=api        forward "print" to the api service
    stackweave api:logs --function=hello  options are passed through

Exit code is 0 when every service succeeded and 1 otherwise.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any

import click

from stackweave import __version__
from stackweave.config.loader import get_settings
from stackweave.errors import InvalidCliOptionError, format_error
from stackweave.service import GLOBAL_COMMANDS, ComponentsService

logger = logging.getLogger(__name__)

# Options that belong to the wrapped frameworks, not to us
REJECTED_OPTIONS = ("debug", "config", "param")

GLOBAL_OPTIONS = ("verbose", "stage", "max-concurrency")
COMMAND_OPTIONS = {"logs": ("tail",)}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_extra_options(args: list[str]) -> dict[str, Any]:
    """
    Parse pass-through options.

    --key=value -> {"key": "value"}
    --flag      -> {"flag": True}
    -f value    -> {"f": "value"}
    """
    options: dict[str, Any] = {}
    index = 0
    while index < len(args):
        arg = args[index]
        if arg.startswith("--"):
            key, separator, value = arg[2:].partition("=")
            options[key] = value if separator else True
        elif arg.startswith("-") and len(arg) == 2:
            if index + 1 < len(args) and not args[index + 1].startswith("-"):
                options[arg[1]] = args[index + 1]
                index += 1
            else:
                options[arg[1]] = True
        else:
            raise InvalidCliOptionError(f'Unexpected argument "{arg}"', "UNEXPECTED_ARGUMENT")
        index += 1
    return options


def validate_options(command: str, options: dict[str, Any], single_service: bool) -> None:
    """
    Reject options stackweave cannot honor.

    Raises:
        InvalidCliOptionError: Listing every offending option
    """
    rejected = [key for key in options if key in REJECTED_OPTIONS]
    if rejected:
        raise InvalidCliOptionError(
            "Unsupported CLI options: "
            + ", ".join(f"--{key}" for key in rejected)
            + ". Set them in stackweave.yml instead.",
            "INVALID_CLI_OPTION",
        )

    if single_service or command not in GLOBAL_COMMANDS:
        return

    allowed = (*GLOBAL_OPTIONS, *COMMAND_OPTIONS.get(command, ()))
    unsupported = [key for key in options if key not in allowed]
    if unsupported:
        raise InvalidCliOptionError(
            f'Unsupported options for "{command}": '
            + ", ".join(f"--{key}" for key in unsupported),
            "INVALID_CLI_OPTION",
        )


async def run_command(
    root: Path,
    command: str,
    service_id: str | None,
    options: dict[str, Any],
    *,
    stage: str,
    verbose: bool,
    max_concurrency: int | None,
    state_dir: str,
) -> int:
    """Boot, run one command, always shut down. Returns the exit code."""
    service = ComponentsService(
        root,
        stage,
        verbose=verbose,
        max_concurrency=max_concurrency,
        state_dir=state_dir,
    )

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, task.cancel)

    try:
        await service.boot()
        if service_id is not None:
            await service.invoke_single_service(service_id, command, options)
        else:
            await service.invoke_lifecycle(command, options)
    finally:
        await service.shutdown()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signum)

    summary = service.summary()
    logger.info(f"[cli] {command} finished: {summary}")
    return 1 if service.has_failures else 0


@click.command(
    context_settings={"ignore_unknown_options": True, "allow_extra_args": True}
)
@click.argument("command")
@click.option("--stage", default=None, help="Stage to operate on (default: dev)")
@click.option("--service", "service_id", default=None, help="Run the command on one service")
@click.option("--verbose", is_flag=True, default=False, help="Verbose output")
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None,
              help="Maximum number of services running at the same time")
@click.option("--tail", is_flag=True, default=False, help="Tail logs (logs command only)")
@click.version_option(version=__version__, prog_name="stackweave")
@click.pass_context
def main(ctx, command, stage, service_id, verbose, max_concurrency, tail):
    """
    stackweave - deploy multi-service projects.

    COMMAND is a global command (deploy, remove, info, logs, outputs,
    refresh-outputs, package) or SERVICE:COMMAND for a single service.
    """
    settings = get_settings()
    verbose = verbose or settings.verbose
    configure_logging(verbose)

    try:
        options = parse_extra_options(list(ctx.args))
        if ":" in command and service_id is None:
            service_id, command = command.split(":", 1)
        if tail:
            options["tail"] = True

        validate_options(command, options, single_service=service_id is not None)

        exit_code = asyncio.run(
            run_command(
                Path.cwd(),
                command,
                service_id,
                options,
                stage=stage or settings.stage,
                verbose=verbose,
                max_concurrency=max_concurrency or settings.max_concurrency,
                state_dir=settings.state_dir,
            )
        )
    except (KeyboardInterrupt, asyncio.CancelledError):
        click.echo("Interrupted", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(format_error(e, verbose=verbose), err=True)
        raise SystemExit(1)

    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
