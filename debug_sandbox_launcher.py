#!/usr/bin/env python3
"""Launch interactive debugging sessions inside a containerised sandbox."""

from __future__ import annotations

import argparse
import asyncio
import codecs
import enum
import logging
import os
import posixpath
import re
import shutil
import subprocess
import sys
from asyncio import subprocess as aio_subprocess
from contextlib import suppress
from dataclasses import dataclass, field
from typing import (
    BinaryIO,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

import anyio
from packaging.version import InvalidVersion
from packaging.version import parse as _parse_version

logger = logging.getLogger("debug-sandbox-launcher")

DEFAULT_RUNTIME = os.environ.get("DEBUG_SANDBOX_RUNTIME")
FALLBACK_RUNTIME = "docker"
DEFAULT_SANDBOX_ROOT = os.environ.get("DEBUG_SANDBOX_ROOT", "/usr/project")
DEFAULT_OUTPUT_DIR = os.environ.get("DEBUG_SANDBOX_OUTPUT_DIR", "out")
DEFAULT_DEPS_DIR = os.environ.get("DEBUG_SANDBOX_DEPS_DIR", "node_modules")
_RESULT_TIMEOUT_ENV = os.environ.get("DEBUG_SANDBOX_RESULT_TIMEOUT", "").strip()
DEFAULT_RESULT_TIMEOUT: Optional[float] = (
    float(_RESULT_TIMEOUT_ENV) if _RESULT_TIMEOUT_ENV else None
)

RESULT_BEGIN = "RESULT_BEGIN"
RESULT_END = "RESULT_END"

LogLevel = Literal["off", "error", "warn", "info", "debug", "trace"]
LOG_LEVELS: Tuple[str, ...] = ("off", "error", "warn", "info", "debug", "trace")

_READ_CHUNK_SIZE = 4096

# `--mount` on `docker run` first shipped in 17.06.
_MIN_RUNTIME_VERSIONS: Dict[str, str] = {
    "docker": "17.06",
    "podman": "1.0",
}
_VERSION_PATTERN = re.compile(r"version\s+v?(\d+(?:\.\d+)*)", re.IGNORECASE)


class DebugSandboxError(RuntimeError):
    """Base class for failures raised while preparing or running a session."""


class UnsupportedExtension(DebugSandboxError, ValueError):
    """Raised when no debugger runtime is registered for a file extension."""

    def __init__(self, extension: str, supported: Sequence[str]) -> None:
        accepted = '", "'.join(supported)
        super().__init__(f'Unknown extension "{extension}". Accepted: "{accepted}"')
        self.extension = extension
        self.supported = tuple(supported)


class ProcessError(DebugSandboxError):
    """Raised when the container runtime process cannot be started."""

    def __init__(self, message: str, *, command: str = "") -> None:
        super().__init__(message)
        self.command = command


class IncompleteResult(DebugSandboxError):
    """Raised when a bounded wait ends before ``RESULT_END`` was printed."""

    def __init__(self, message: str, *, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class RuntimeUnavailable(DebugSandboxError):
    """Raised when the container runtime fails the version preflight."""


@dataclass(frozen=True)
class MountSpec:
    """A single filesystem binding passed to ``--mount``."""

    source: str
    target: str
    read_only: bool = False
    type: Literal["bind"] = "bind"

    def to_flag(self) -> str:
        parts = [
            f"type={self.type}",
            f"source={self.source}",
            f"target={self.target}",
            "readonly" if self.read_only else "",
        ]
        return ",".join(part for part in parts if part)


@dataclass(frozen=True)
class RuntimeDescriptor:
    """Debugger image and the tool assets it needs mounted."""

    extension: str
    image: str
    mounts: Tuple[MountSpec, ...] = ()


@dataclass(frozen=True)
class SessionRequest:
    main_file_path: str
    log_level: LogLevel = "off"

    def __post_init__(self) -> None:
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"Unknown log level {self.log_level!r}; expected one of {', '.join(LOG_LEVELS)}"
            )


@dataclass(frozen=True)
class LaunchPlan:
    command: str
    args: Tuple[str, ...] = ()

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def render(self) -> str:
        """Return the command in the multi-line form shown to the operator."""

        return " \\\n  ".join(self.argv)


@dataclass(frozen=True)
class SandboxPaths:
    """Host and sandbox locations shared by every session.

    Host paths are resolved against ``self_root`` and mounted at the same
    relative location under ``sandbox_root`` so that relative paths handed to
    the debugger resolve identically on both sides.
    """

    self_root: str = field(default_factory=os.getcwd)
    sandbox_root: str = DEFAULT_SANDBOX_ROOT
    output_dir: str = DEFAULT_OUTPUT_DIR
    dependency_dir: str = DEFAULT_DEPS_DIR
    lldb_assets: str = "vscode-lldb"
    php_assets: str = "vscode-php-debug"

    def on_host(self, relative: str) -> str:
        return os.path.normpath(os.path.join(self.self_root, relative))

    def in_sandbox(self, relative: str) -> str:
        return posixpath.normpath(posixpath.join(self.sandbox_root, relative))

    def output(self) -> MountSpec:
        return MountSpec(self.on_host(self.output_dir), self.in_sandbox(self.output_dir))

    def dependencies(self) -> MountSpec:
        return MountSpec(
            self.on_host(self.dependency_dir), self.in_sandbox(self.dependency_dir)
        )

    def tool_assets(self, relative: str) -> MountSpec:
        return MountSpec(self.on_host(relative), self.in_sandbox(relative), read_only=True)


def load_paths(env: Optional[Mapping[str, str]] = None) -> SandboxPaths:
    """Build the path configuration from ``DEBUG_SANDBOX_*`` variables."""

    source = os.environ if env is None else env
    return SandboxPaths(
        self_root=source.get("DEBUG_SANDBOX_SELF_ROOT") or os.getcwd(),
        sandbox_root=source.get("DEBUG_SANDBOX_ROOT", DEFAULT_SANDBOX_ROOT),
        output_dir=source.get("DEBUG_SANDBOX_OUTPUT_DIR", DEFAULT_OUTPUT_DIR),
        dependency_dir=source.get("DEBUG_SANDBOX_DEPS_DIR", DEFAULT_DEPS_DIR),
    )


def build_runtime_table(paths: SandboxPaths) -> Dict[str, RuntimeDescriptor]:
    """Return the extension -> debugger runtime mapping for ``paths``."""

    lldb = (paths.tool_assets(paths.lldb_assets),)
    php = (paths.tool_assets(paths.php_assets),)
    table = {
        ".c": RuntimeDescriptor(".c", "lldb-debugger", lldb),
        ".cpp": RuntimeDescriptor(".cpp", "lldb-debugger", lldb),
        ".php": RuntimeDescriptor(".php", "php-debugger", php),
        ".py": RuntimeDescriptor(".py", "python-debugger"),
    }
    _validate_runtime_table(table)
    return table


def _validate_runtime_table(table: Mapping[str, RuntimeDescriptor]) -> None:
    for extension, descriptor in table.items():
        if not extension.startswith(".") or descriptor.extension != extension:
            raise ValueError(f"Malformed runtime table key {extension!r}")
        if not descriptor.image:
            raise ValueError(f"Runtime for {extension!r} has no image")
        for mount in descriptor.mounts:
            if not mount.source or not mount.target:
                raise ValueError(f"Runtime for {extension!r} has an incomplete mount")


DEFAULT_PATHS = load_paths()
RUNTIME_TABLE = build_runtime_table(DEFAULT_PATHS)


def extension_of(path: str) -> str:
    return os.path.splitext(path)[1]


def supported_extensions(
    table: Mapping[str, RuntimeDescriptor] = RUNTIME_TABLE,
) -> List[str]:
    return list(table)


def resolve_runtime(
    extension: str, table: Mapping[str, RuntimeDescriptor] = RUNTIME_TABLE
) -> RuntimeDescriptor:
    """Return the runtime registered for ``extension`` (leading dot included)."""

    descriptor = table.get(extension)
    if descriptor is None:
        raise UnsupportedExtension(extension, supported_extensions(table))
    return descriptor


def build_mounts(
    descriptor: RuntimeDescriptor,
    main_file_path: str,
    paths: SandboxPaths = DEFAULT_PATHS,
) -> List[MountSpec]:
    """Plan the bind mounts for a session.

    The order is fixed: runtime tool assets, the shared output directory, the
    shared dependency directory and finally the project directory holding
    ``main_file_path``. Entries lacking a source or target are dropped.
    """

    project_path = os.path.dirname(main_file_path)
    project = MountSpec(paths.on_host(project_path), paths.in_sandbox(project_path))
    planned = [
        *descriptor.mounts,
        paths.output(),
        paths.dependencies(),
        project,
    ]
    return [mount for mount in planned if mount.source and mount.target]


def mount_args(mount: MountSpec) -> List[str]:
    return ["--mount", mount.to_flag()]


def detect_runtime(preferred: Optional[str] = None) -> Optional[str]:
    """Return the first available container runtime, or None if not found."""

    candidates: List[Optional[str]] = []
    if preferred:
        candidates.append(preferred)
    if DEFAULT_RUNTIME and DEFAULT_RUNTIME not in candidates:
        candidates.append(DEFAULT_RUNTIME)
    candidates.extend(["docker", "podman"])

    for candidate in candidates:
        if candidate and shutil.which(candidate):
            return candidate

    return None


def assemble_command(
    descriptor: RuntimeDescriptor,
    request: SessionRequest,
    mounts: Sequence[Optional[MountSpec]],
    runtime: Optional[str] = None,
) -> LaunchPlan:
    """Build the ``run`` invocation for ``request``. Pure; nothing is executed."""

    args = [
        "run",
        "-it",
        "--rm",
        "--env",
        f"LOG_LEVEL={request.log_level}",
        *(
            arg
            for mount in mounts
            if mount and mount.source and mount.target
            for arg in mount_args(mount)
        ),
        descriptor.image,
        request.main_file_path,
    ]
    return LaunchPlan(
        command=runtime or FALLBACK_RUNTIME,
        args=tuple(arg for arg in args if arg),
    )


def plan_session(
    request: SessionRequest,
    *,
    paths: SandboxPaths = DEFAULT_PATHS,
    table: Optional[Mapping[str, RuntimeDescriptor]] = None,
    runtime: Optional[str] = None,
) -> LaunchPlan:
    """Resolve, plan mounts and assemble the command for ``request``."""

    if table is None:
        table = RUNTIME_TABLE if paths is DEFAULT_PATHS else build_runtime_table(paths)
    descriptor = resolve_runtime(extension_of(request.main_file_path), table)
    mounts = build_mounts(descriptor, request.main_file_path, paths)
    return assemble_command(descriptor, request, mounts, runtime)


class ExtractionPhase(enum.Enum):
    SEEKING_BEGIN = "seeking_begin"
    ACCUMULATING = "accumulating"
    DONE = "done"


class ResultExtractor:
    """Pull the payload printed between ``RESULT_BEGIN`` and ``RESULT_END``.

    Chunks are searched independently, so a sentinel split across two chunks
    is not recognised. Text outside the sentinels is ignored.
    """

    def __init__(self, begin: str = RESULT_BEGIN, end: str = RESULT_END) -> None:
        self.begin = begin
        self.end = end
        self.accumulated = ""
        self.phase = ExtractionPhase.SEEKING_BEGIN
        self.payload: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.phase is ExtractionPhase.DONE

    def feed(self, chunk: str) -> Optional[str]:
        """Consume one chunk; return the payload the first time it completes."""

        if self.done:
            return None

        message = chunk
        begin_at = message.find(self.begin)
        if self.phase is ExtractionPhase.ACCUMULATING:
            end_at = message.find(self.end)
            if end_at != -1 and (begin_at == -1 or end_at < begin_at):
                return self._finish(message[:end_at])

        if begin_at != -1:
            message = message[begin_at + len(self.begin) :]
            self.accumulated = ""
            self.phase = ExtractionPhase.ACCUMULATING
        elif self.phase is ExtractionPhase.SEEKING_BEGIN:
            return None

        end_at = message.find(self.end)
        if end_at != -1:
            return self._finish(message[:end_at])

        self.accumulated += message
        return None

    def _finish(self, tail: str) -> str:
        payload = (self.accumulated + tail).strip()
        self.accumulated = ""
        self.phase = ExtractionPhase.DONE
        self.payload = payload
        return payload


def extract_result(chunks: Iterable[str]) -> Optional[str]:
    """Run ``chunks`` through a fresh extractor; None when no payload completed."""

    extractor = ResultExtractor()
    for chunk in chunks:
        payload = extractor.feed(chunk)
        if payload is not None:
            return payload
    return None


class SessionHandle:
    """A running debugger process plus the tap feeding its result extractor."""

    def __init__(
        self,
        plan: LaunchPlan,
        process: asyncio.subprocess.Process,
        result: "asyncio.Future[str]",
        extractor: ResultExtractor,
        tasks: Sequence["asyncio.Task[None]"],
    ) -> None:
        self.plan = plan
        self.process = process
        self.extractor = extractor
        self._result = result
        self._tasks = list(tasks)

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> int:
        """Wait for the process to exit and its output to be drained."""

        returncode = await self.process.wait()
        for task in self._tasks:
            await task
        logger.debug("Debugger process %s exited with %s", self.pid, returncode)
        return returncode

    async def result(self, timeout: Optional[float] = None) -> str:
        """Return the extracted payload.

        With ``timeout=None`` this waits for as long as it takes; a runtime that
        never prints ``RESULT_END`` keeps the caller waiting forever.
        """

        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout)
        except asyncio.TimeoutError as exc:
            raise IncompleteResult(
                f"No {RESULT_END} received within {timeout}s",
                partial=self.extractor.accumulated,
            ) from exc


async def _pump_stdout(
    stream: asyncio.StreamReader,
    echo: BinaryIO,
    send_stream: "anyio.abc.ObjectSendStream[str]",
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    forwarding = True
    async with send_stream:
        while True:
            data = await stream.read(_READ_CHUNK_SIZE)
            if not data:
                break
            echo.write(data)
            echo.flush()
            text = decoder.decode(data)
            if not text or not forwarding:
                continue
            try:
                await send_stream.send(text)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                # Extractor has finished; keep mirroring the terminal.
                forwarding = False
        tail = decoder.decode(b"", final=True)
        if tail and forwarding:
            with suppress(anyio.BrokenResourceError, anyio.ClosedResourceError):
                await send_stream.send(tail)


async def _consume_chunks(
    receive_stream: "anyio.abc.ObjectReceiveStream[str]",
    extractor: ResultExtractor,
    result: "asyncio.Future[str]",
) -> None:
    async with receive_stream:
        async for chunk in receive_stream:
            payload = extractor.feed(chunk)
            if payload is None:
                continue
            if not result.done():
                result.set_result(payload)
            logger.debug("Captured result payload (%d chars)", len(payload))
            break


async def launch(plan: LaunchPlan, *, echo: Optional[BinaryIO] = None) -> SessionHandle:
    """Start ``plan`` with the terminal attached and tap its standard output.

    Standard input and error are inherited. Standard output is piped so it can
    be mirrored to ``echo`` (the terminal by default) while a result extractor
    watches it; both tasks are running before this coroutine returns.
    """

    sink = echo if echo is not None else sys.stdout.buffer

    logger.info("command\n %s", plan.render())
    try:
        process = await asyncio.create_subprocess_exec(
            *plan.argv,
            stdin=None,
            stdout=aio_subprocess.PIPE,
            stderr=None,
        )
    except OSError as exc:
        logger.error("process error: %s", exc)
        raise ProcessError(
            f"Failed to start {plan.command!r}: {exc}", command=plan.command
        ) from exc

    assert process.stdout is not None
    result: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
    extractor = ResultExtractor()
    send_stream, receive_stream = anyio.create_memory_object_stream(0)
    tasks = [
        asyncio.create_task(_consume_chunks(receive_stream, extractor, result)),
        asyncio.create_task(_pump_stdout(process.stdout, sink, send_stream)),
    ]
    return SessionHandle(plan, process, result, extractor, tasks)


async def run_session(
    request: SessionRequest,
    *,
    paths: SandboxPaths = DEFAULT_PATHS,
    runtime: Optional[str] = None,
    result_timeout: Optional[float] = DEFAULT_RESULT_TIMEOUT,
    echo: Optional[BinaryIO] = None,
) -> str:
    plan = plan_session(request, paths=paths, runtime=runtime or detect_runtime())
    session = await launch(plan, echo=echo)
    returncode = await session.wait()
    if returncode != 0:
        logger.warning("Debugger session exited with status %s", returncode)
    return await session.result(result_timeout)


async def call_script(
    main_file_path: str,
    log_level: str = "off",
    *,
    paths: SandboxPaths = DEFAULT_PATHS,
    runtime: Optional[str] = None,
    result_timeout: Optional[float] = DEFAULT_RESULT_TIMEOUT,
    echo: Optional[BinaryIO] = None,
) -> str:
    """Debug ``main_file_path`` in its sandbox and return the raw result JSON."""

    request = SessionRequest(main_file_path, log_level)
    return await run_session(
        request,
        paths=paths,
        runtime=runtime,
        result_timeout=result_timeout,
        echo=echo,
    )


def parse_runtime_version(text: str) -> Optional[str]:
    match = _VERSION_PATTERN.search(text)
    return match.group(1) if match else None


def check_runtime_version(runtime: str) -> str:
    """Verify ``runtime`` is installed and new enough for ``--mount``.

    Returns the detected version string.
    """

    try:
        completed = subprocess.run(
            [runtime, "--version"],
            capture_output=True,
            stdin=subprocess.DEVNULL,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise RuntimeUnavailable(f"Container runtime {runtime!r} is unavailable: {exc}") from exc

    if completed.returncode != 0:
        raise RuntimeUnavailable(
            f"{runtime} --version exited with {completed.returncode}: {completed.stderr.strip()}"
        )

    version = parse_runtime_version(completed.stdout)
    if version is None:
        raise RuntimeUnavailable(f"Could not read a version from {completed.stdout.strip()!r}")

    name = os.path.basename(runtime).lower()
    minimum = next(
        (floor for key, floor in _MIN_RUNTIME_VERSIONS.items() if key in name), None
    )
    if minimum is None:
        logger.debug("No minimum version known for %s; accepting %s", runtime, version)
        return version
    try:
        too_old = _parse_version(version) < _parse_version(minimum)
    except InvalidVersion as exc:
        raise RuntimeUnavailable(f"Unparseable {runtime} version {version!r}") from exc
    if too_old:
        raise RuntimeUnavailable(
            f"{runtime} {version} is too old; {minimum} or newer is required for --mount"
        )
    return version


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="debug-sandbox",
        description="Debug a source file inside its sandboxed debugger image.",
    )
    parser.add_argument("main_file", help="Path to the main file of the project to debug")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="off",
        help="LOG_LEVEL passed to the debugger runtime (default: off)",
    )
    parser.add_argument("--runtime", help="Container runtime executable (docker or podman)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_RESULT_TIMEOUT,
        help="Seconds to wait for RESULT_END after the debugger exits (default: forever)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the container command without running it",
    )
    parser.add_argument(
        "--check-runtime",
        action="store_true",
        help="Verify the container runtime version before launching",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=os.environ.get("DEBUG_SANDBOX_LOG_LEVEL", "INFO"))
    args = _build_parser().parse_args(argv)
    runtime = detect_runtime(args.runtime) or args.runtime

    try:
        request = SessionRequest(args.main_file, args.log_level)
        if args.dry_run:
            plan = plan_session(request, runtime=runtime)
            print(plan.render())
            return 0
        if args.check_runtime:
            version = check_runtime_version(runtime or FALLBACK_RUNTIME)
            logger.info("Using %s %s", runtime or FALLBACK_RUNTIME, version)
        payload = asyncio.run(
            run_session(request, runtime=runtime, result_timeout=args.timeout)
        )
    except UnsupportedExtension as exc:
        logger.error("%s", exc)
        return 2
    except (DebugSandboxError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130

    print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
