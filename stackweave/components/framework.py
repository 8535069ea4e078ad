"""
Framework Component.

Default component: wraps a single-service deployment CLI (the
Serverless Framework by default) and runs it as a subprocess inside
the service directory.

    services:
      api:
        path: api                   # required, relative to the project root
        config: serverless.api.yml  # optional --config
        region: eu-west-1           # optional --region
        params:                     # passed as --param key=value
          queueArn: ${resources.QueueArn}
        cachePatterns:              # optional, skip deploys when unchanged
          - "src/**"
          - serverless.yml

Every invocation gets `--stage <stage>` appended. Outputs are read
from the "Stack Outputs" section of `info --verbose`.

Commands that are not lifecycle methods are forwarded to the CLI:
`stackweave api:print` runs `serverless print --stage dev` in `api/`.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, ConfigDict, Field

from stackweave.errors import ComponentExecutionError, InvalidComponentConfigurationError

from .base import Component, ComponentContext

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "serverless"
MINIMAL_FRAMEWORK_VERSION = (3, 7, 7)

NO_CHANGES_MARKER = "No changes to deploy. Deployment skipped."
NO_LOG_STREAMS_MARKER = "No existing streams for the function"

_VERSION_PATTERN = re.compile(r"Framework Core: ([0-9]+)\.([0-9]+)\.([0-9]+)")
# Everything indented by two spaces below "Stack Outputs:"
_STACK_OUTPUTS_PATTERN = re.compile(r"Stack Outputs:\n((?: {2}[ \S]+\n)+)")


class FrameworkInputs(BaseModel):
    """Inputs accepted by the framework component."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    path: str
    region: str | None = None
    config: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    cache_patterns: list[str] | None = Field(None, alias="cachePatterns")


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    returncode: int = 0


class FrameworkComponent(Component):
    """
    Component running the deployment framework CLI.

    The executable defaults to `serverless` and can be overridden with
    the STACKWEAVE_FRAMEWORK_CLI environment variable.
    """

    type_name = "framework"
    input_model = FrameworkInputs

    def __init__(self, service_id: str, context: ComponentContext, inputs: dict[str, Any]):
        super().__init__(service_id, context, inputs)
        self.config = FrameworkInputs.model_validate(inputs)
        self.executable = os.environ.get("STACKWEAVE_FRAMEWORK_CLI", DEFAULT_EXECUTABLE)

        if self.working_directory.resolve() == Path(context.root).resolve():
            raise InvalidComponentConfigurationError(
                service_id,
                f'Service "{service_id}" cannot have a "path" that points to the '
                "root directory of the project",
                "INVALID_PATH_IN_SERVICE_CONFIGURATION",
            )

    @property
    def working_directory(self) -> Path:
        return Path(self.context.root) / self.config.path

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def deploy(self, options: dict[str, Any]) -> None:
        self.start_progress("deploying")

        cache_hash = None
        if self.config.cache_patterns:
            self.update_progress("calculating changes")
            cache_hash = self.calculate_cache_hash()
            unchanged = (
                _canonical(self.inputs) == _canonical(self.state.get("inputs"))
                and cache_hash == self.state.get("cacheHash")
            )
            if unchanged:
                self.success_progress("no changes")
                return
            self.update_progress("deploying")

        result = await self.exec(["deploy"])

        has_outputs = bool(self.outputs)
        has_changes = NO_CHANGES_MARKER not in result.stderr
        # `info` is slow; skip it when nothing changed and outputs are known
        if has_changes or not has_outputs:
            await self.update_outputs(await self.retrieve_outputs())

        if self.config.cache_patterns:
            self.state["inputs"] = self.inputs
            self.state["cacheHash"] = cache_hash
            await self.save()

        self.success_progress("deployed" if has_changes else "no changes")

    async def remove(self, options: dict[str, Any]) -> None:
        self.start_progress("removing")
        await self.exec(["remove"])
        self.state = {}
        await self.save()
        await self.update_outputs({})
        self.success_progress("removed")

    async def package(self, options: dict[str, Any]) -> None:
        self.start_progress("packaging")
        await self.exec(["package"])
        self.success_progress("packaged")

    async def info(self, options: dict[str, Any]) -> None:
        result = await self.exec(["info"])
        self.write_text(result.stdout)

    async def refresh_outputs(self, options: dict[str, Any]) -> None:
        self.start_progress("refreshing outputs")
        await self.update_outputs(await self.retrieve_outputs())
        self.success_progress("outputs refreshed")

    async def logs(self, options: dict[str, Any]) -> None:
        functions = await self.retrieve_functions()
        # Services without functions have no logs
        if not functions:
            return

        tail = bool(options.get("tail"))
        if tail:
            self.start_progress("logs")

        await asyncio.gather(
            *(self._function_logs(name, tail) for name in functions)
        )

        if tail:
            self.success_progress("no log streams to tail")

    async def _function_logs(self, function_name: str, tail: bool) -> None:
        def write(output: str) -> None:
            if output.strip() and NO_LOG_STREAMS_MARKER not in output:
                self.write_text(output.strip(), [function_name])

        args = ["logs", "--function", function_name]
        if tail:
            args.append("--tail")
        try:
            await self.exec(args, on_stdout=write)
        except ComponentExecutionError as e:
            if NO_LOG_STREAMS_MARKER in str(e):
                return
            self.log_error(e, [function_name])

    async def command(self, command: str, options: dict[str, Any]) -> CommandResult:
        """Forward an arbitrary command to the CLI, e.g. "print" or "deploy:function"."""
        cli_options: list[str] = []
        for key, value in options.items():
            if key == "stage":
                continue
            if value is True:
                cli_options.append(f"--{key}")
            elif len(key) == 1:
                cli_options.extend([f"-{key}", str(value)])
            else:
                cli_options.append(f"--{key}={value}")
        return await self.exec([*command.split(":"), *cli_options], stream=True)

    # =========================================================================
    # CLI helpers
    # =========================================================================

    async def retrieve_outputs(self) -> dict[str, Any]:
        result = await self.exec(["info", "--verbose"])
        outputs = parse_stack_outputs(result.stdout)
        if outputs is None:
            raise ComponentExecutionError(
                self.id,
                f'Impossible to parse the output of "{self.executable} info":\n{result.stdout}',
                "CANNOT_PARSE_FRAMEWORK_OUTPUTS",
            )
        return outputs

    async def retrieve_functions(self) -> dict[str, Any]:
        result = await self.exec(["print"])
        try:
            document = yaml.safe_load(result.stdout) or {}
        except yaml.YAMLError as e:
            raise ComponentExecutionError(
                self.id,
                f"Could not retrieve functions from configuration:\n{result.stdout}",
            ) from e
        functions = document.get("functions") if isinstance(document, dict) else None
        return functions or {}

    async def ensure_framework_version(self) -> None:
        """Check the CLI version once; the detected version is kept in state."""
        detected = self.state.get("detectedFrameworkVersion")
        if detected and _parse_version(detected) >= MINIMAL_FRAMEWORK_VERSION:
            return

        try:
            result = await self.run_cli(["--version"])
        except ComponentExecutionError as e:
            raise ComponentExecutionError(
                self.id,
                f"Could not find the {self.executable} CLI installation. "
                "Ensure it is installed before continuing.",
                "FRAMEWORK_CLI_NOT_FOUND",
            ) from e

        match = _VERSION_PATTERN.search(result.stdout)
        if match is None:
            raise ComponentExecutionError(
                self.id,
                f"Could not verify the {self.executable} CLI installation.",
                "FRAMEWORK_VERSION_UNKNOWN",
            )

        version = tuple(int(part) for part in match.groups())
        version_string = ".".join(match.groups())
        if version < MINIMAL_FRAMEWORK_VERSION:
            minimal = ".".join(str(part) for part in MINIMAL_FRAMEWORK_VERSION)
            raise ComponentExecutionError(
                self.id,
                f"The installed version of {self.executable} ({version_string}) is not "
                f'supported. Please upgrade to a version greater or equal to "{minimal}"',
                "FRAMEWORK_VERSION_UNSUPPORTED",
            )

        self.state["detectedFrameworkVersion"] = version_string
        await self.save()

    async def exec(
        self,
        args: list[str],
        *,
        stream: bool = False,
        on_stdout: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Run the CLI with the stage, config, params and region of this service."""
        await self.ensure_framework_version()

        full_args = [*args, "--stage", self.stage]
        if self.config.config:
            full_args += ["--config", self.config.config]
        for key, value in self.config.params.items():
            full_args += ["--param", f"{key}={value}"]
        if self.config.region:
            full_args += ["--region", self.config.region]

        return await self.run_cli(full_args, stream=stream, on_stdout=on_stdout)

    async def run_cli(
        self,
        args: list[str],
        *,
        stream: bool = False,
        on_stdout: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """
        Spawn the CLI in the service directory and wait for it.

        With `stream`, stdout goes straight to the terminal.

        Raises:
            ComponentExecutionError: The CLI is missing or exits non-zero
        """
        self.log_verbose(f'Running "{self.executable} {" ".join(args)}"')
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(self.working_directory),
                stdout=None if stream else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "SLS_DISABLE_AUTO_UPDATE": "1", "SLS_COMPOSE": "1"},
            )
        except OSError as e:
            raise ComponentExecutionError(
                self.id, f'Could not run "{self.executable}": {e}', "FRAMEWORK_CLI_NOT_FOUND"
            ) from e

        self.context.track_process(process)
        stdout: list[str] = []
        stderr: list[str] = []
        try:
            await asyncio.gather(
                self._drain(process.stdout, stdout, on_stdout),
                self._drain(process.stderr, stderr, None),
            )
            returncode = await process.wait()
        finally:
            self.context.untrack_process(process)

        result = CommandResult("".join(stdout), "".join(stderr), returncode)
        if returncode != 0:
            position = result.stdout.find("Error:")
            message = result.stdout[position:] if position >= 0 else result.stdout + result.stderr
            raise ComponentExecutionError(
                self.id, message.strip() or f"{self.executable} exited with code {returncode}"
            )
        return result

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        callback: Callable[[str], None] | None,
    ) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace")
            sink.append(text)
            self.log_verbose(text.rstrip())
            if callback is not None:
                callback(text)

    def calculate_cache_hash(self) -> str:
        """Hash of every file matched by cachePatterns, independent of read order."""
        root = self.working_directory
        files: set[Path] = set()
        for pattern in self.config.cache_patterns or []:
            files.update(p for p in root.glob(pattern) if p.is_file())

        hashes = sorted(hashlib.md5(path.read_bytes()).hexdigest() for path in files)
        return hashlib.md5(",".join(hashes).encode()).hexdigest()


def parse_stack_outputs(text: str) -> dict[str, Any] | None:
    """
    Extract "Stack Outputs" from `info --verbose` output.

    Falls back to parsing only the indented block below the header
    when the full output is not valid YAML (plugins print extra lines).
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError:
        document = None
    if isinstance(document, dict) and "Stack Outputs" in document:
        return document["Stack Outputs"] or {}

    match = _STACK_OUTPUTS_PATTERN.search(text)
    if match:
        try:
            section = yaml.safe_load(match.group(1))
        except yaml.YAMLError:
            return None
        if isinstance(section, dict):
            return section
    return None


def _parse_version(version: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return (0,)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)
