#!/usr/bin/env python3
"""MCP server that copies a local project directory into a Docker container."""

import asyncio
import contextlib
import logging
import os
import posixpath
import stat
import sys
import tarfile
import time
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional

import docker
import docker.errors
from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout is MCP protocol) ───────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("container-copy-mcp")

_level_name = os.environ.get("CONTAINER_COPY_LOG_LEVEL")
if _level_name:
    _level = getattr(logging, _level_name.upper(), None)
    if isinstance(_level, int):
        log.setLevel(_level)
    else:
        log.warning(
            "Unknown CONTAINER_COPY_LOG_LEVEL %r, keeping INFO", _level_name
        )


# ── Config ───────────────────────────────────────────────────────────────


def _float_from_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Invalid number for %s: %r. Falling back to %s.", name, raw, default)
        return default
    if value <= 0:
        log.warning("%s must be positive, got %r. Falling back to %s.", name, raw, default)
        return default
    return value


# Where unqualified destinations land inside the container
BASE_DIR = posixpath.normpath(os.environ.get("CONTAINER_COPY_BASE_DIR") or "/app")

# Used when the container reports no $HOME
DEFAULT_HOME_DIR = "/root"

# Exec sessions are polled at this interval (seconds)
POLL_INTERVAL = _float_from_env("CONTAINER_COPY_POLL_INTERVAL", 0.1)

# Per-command deadline for post-copy commands (seconds)
DEFAULT_COMMAND_TIMEOUT = _float_from_env("CONTAINER_COPY_COMMAND_TIMEOUT", 300.0)

ARCHIVE_CHUNK_SIZE = 64 * 1024
MAX_OUTPUT = 50_000


# ── Errors ───────────────────────────────────────────────────────────────


class CopyProjectError(Exception):
    """Base class; ``stage`` names the pipeline step that failed."""

    stage = "copying project"


class InvalidArgument(CopyProjectError):
    stage = "validating arguments"


class SourceNotFound(CopyProjectError):
    stage = "accessing source directory"


class ArchiveError(CopyProjectError):
    stage = "creating tar archive"


class RuntimeConnectionError(CopyProjectError):
    stage = "connecting to Docker"


class ContainerNotFound(CopyProjectError):
    stage = "inspecting container"


class CopyFailed(CopyProjectError):
    stage = "copying to container"


class CommandError(CopyProjectError):
    """Docker refused or broke off an exec session (e.g. container stopped)."""

    stage = "running command"


class CommandTimeout(CommandError):
    pass


class CommandFailed(CommandError):
    def __init__(self, exit_code: int, output: str, command: str = "", result=None):
        self.exit_code = exit_code
        self.output = output
        self.command = command
        self.result = result
        msg = f"command exited with code {exit_code}"
        if command:
            msg = f"{command!r} exited with code {exit_code}"
        if output:
            msg += f": {output.strip()}"
        super().__init__(msg)


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


def _truncate(text: str, limit: int = MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[:limit]
        + f"\n[truncated, {total} total, showing first {_humanize_bytes(limit)}]"
    )


def _require(value: Optional[str], name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{name} is required")
    return value.strip()


# ── Argument resolution ──────────────────────────────────────────────────


@dataclass(frozen=True)
class CopyPlan:
    container_id: str
    source: str
    destination: str
    contents_only: bool
    # Directory the archive is extracted into
    target_path: str
    # Leading path segment of every archive entry; None in contents-only mode
    archive_root: Optional[str]


def resolve_source(local_src_dir: Optional[str]) -> str:
    """Normalize the host source directory; it must exist and be a directory."""
    path = _require(local_src_dir, "local_src_dir")
    path = os.path.abspath(os.path.expanduser(path))
    try:
        st = os.stat(path)
    except OSError as e:
        raise SourceNotFound(f"{path}: {e.strerror or e}") from e
    if not stat.S_ISDIR(st.st_mode):
        raise SourceNotFound(f"local_src_dir must be a directory: {path}")
    return path


def _is_home_relative(dest_dir: Optional[str]) -> bool:
    if not dest_dir:
        return False
    dest_dir = dest_dir.strip()
    return dest_dir == "~" or dest_dir.startswith("~/")


def resolve_destination(
    dest_dir: Optional[str],
    base_dir: str = BASE_DIR,
    home_dir: Optional[str] = None,
) -> tuple[str, bool]:
    """
    Work out where the project lands inside the container.

    Returns ``(destination, contents_only)``. An empty destination (or ".")
    means "copy the directory's contents straight into ``base_dir``".
    Anything else nests the tree at exactly ``destination``: relative paths
    go under ``base_dir``, ``~`` paths under the container user's home.
    """
    dest = (dest_dir or "").strip()
    if dest in ("", "."):
        return posixpath.normpath(base_dir), True

    contents_only = False
    if _is_home_relative(dest):
        home = posixpath.normpath(home_dir or DEFAULT_HOME_DIR)
        rest = dest[1:].lstrip("/")
        destination = posixpath.normpath(posixpath.join(home, rest)) if rest else home
        contents_only = destination == home
    elif dest.startswith("/"):
        destination = posixpath.normpath(dest)
    else:
        destination = posixpath.normpath(posixpath.join(base_dir, dest))

    # normpath keeps a leading "//"
    if destination.startswith("//"):
        destination = "/" + destination.lstrip("/")
    if destination == "/":
        contents_only = True
    return destination, contents_only


def plan_copy(
    container_id: Optional[str],
    local_src_dir: Optional[str],
    dest_dir: Optional[str] = None,
    home_dir: Optional[str] = None,
    base_dir: str = BASE_DIR,
) -> CopyPlan:
    """Validate a copy request and decide where the archive is extracted."""
    container_id = _require(container_id, "container_id")
    source = resolve_source(local_src_dir)
    destination, contents_only = resolve_destination(
        dest_dir, base_dir=base_dir, home_dir=home_dir
    )
    if contents_only:
        return CopyPlan(
            container_id=container_id,
            source=source,
            destination=destination,
            contents_only=True,
            target_path=destination,
            archive_root=None,
        )
    # Extract into the parent and let the archive's root entry create the
    # final directory, named after the destination rather than the source.
    return CopyPlan(
        container_id=container_id,
        source=source,
        destination=destination,
        contents_only=False,
        target_path=posixpath.dirname(destination),
        archive_root=posixpath.basename(destination),
    )


# ── Archiver ─────────────────────────────────────────────────────────────


class ArchiveEntry(NamedTuple):
    local_path: str
    rel_path: str
    is_dir: bool
    mode: int
    size: int


def walk_source_tree(root: str) -> Iterator[ArchiveEntry]:
    """
    Yield every entry below ``root`` depth-first, parents before children.

    Siblings come out in sorted name order. Symlinks are reported, not
    followed, and ``root`` itself is never yielded.
    """
    root = os.path.normpath(root)

    def _walk(dir_path: str, rel_dir: str) -> Iterator[ArchiveEntry]:
        try:
            with os.scandir(dir_path) as it:
                names = sorted(entry.name for entry in it)
        except OSError as e:
            raise ArchiveError(f"{dir_path}: {e.strerror or e}") from e

        for name in names:
            local_path = os.path.join(dir_path, name)
            rel_path = f"{rel_dir}/{name}" if rel_dir else name
            try:
                st = os.lstat(local_path)
            except OSError as e:
                raise ArchiveError(f"{local_path}: {e.strerror or e}") from e
            is_dir = stat.S_ISDIR(st.st_mode)
            yield ArchiveEntry(
                local_path=local_path,
                rel_path=rel_path,
                is_dir=is_dir,
                mode=st.st_mode,
                size=0 if is_dir else st.st_size,
            )
            if is_dir:
                yield from _walk(local_path, rel_path)

    yield from _walk(root, "")


class _ChunkSink:
    """Write-only file object that hands back what tarfile has written."""

    def __init__(self):
        self._chunks: list[bytes] = []
        self._size = 0

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        self._size += len(data)
        return len(data)

    def pending(self) -> int:
        return self._size

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        self._size = 0
        return data


def iter_tar_archive(
    root: str,
    contents_only: bool = False,
    arcname: Optional[str] = None,
    chunk_size: int = ARCHIVE_CHUNK_SIZE,
) -> Iterator[bytes]:
    """
    Stream ``root`` as an uncompressed tar archive.

    With ``contents_only`` entries are named relative to ``root``; otherwise
    they sit under ``arcname`` (default: the base name of ``root``). File
    bodies are read ``chunk_size`` bytes at a time and handed out as soon
    as that much is buffered, so neither the tree nor a single large file
    is held in memory as a whole. Raises ArchiveError on the first
    unreadable entry.
    """
    root = os.path.normpath(root)
    prefix = None if contents_only else (arcname or os.path.basename(root))

    sink = _ChunkSink()
    tar = tarfile.open(fileobj=sink, mode="w|", format=tarfile.PAX_FORMAT)
    count = 0
    for entry in walk_source_tree(root):
        name = f"{prefix}/{entry.rel_path}" if prefix else entry.rel_path
        try:
            info = tar.gettarinfo(entry.local_path, arcname=name)
            if info is None:
                log.debug(f"Skipping unsupported file type: {entry.local_path}")
                continue
            if info.isreg():
                with open(entry.local_path, "rb") as f:
                    yield from _add_file_in_chunks(tar, info, f, sink, chunk_size)
            else:
                tar.addfile(info)
        except OSError as e:
            raise ArchiveError(f"{entry.local_path}: {e.strerror or e}") from e
        count += 1
        log.debug(f"Archived {name}")
        if sink.pending() >= chunk_size:
            yield sink.drain()
    tar.close()
    tail = sink.drain()
    if tail:
        yield tail
    log.debug(f"Archive of {root}: {count} entries")


def _add_file_in_chunks(tar, info, f, sink: _ChunkSink, chunk_size: int) -> Iterator[bytes]:
    """TarFile.addfile() for a regular file, yielding between slices of the body."""
    header = info.tobuf(tar.format, tar.encoding, tar.errors)
    tar.fileobj.write(header)
    tar.offset += len(header)

    remaining = info.size
    while remaining:
        data = f.read(min(chunk_size, remaining))
        if not data:
            raise OSError("unexpected end of data")
        tar.fileobj.write(data)
        remaining -= len(data)
        if sink.pending() >= chunk_size:
            yield sink.drain()

    blocks, rest = divmod(info.size, tarfile.BLOCKSIZE)
    if rest:
        tar.fileobj.write(tarfile.NUL * (tarfile.BLOCKSIZE - rest))
        blocks += 1
    tar.offset += blocks * tarfile.BLOCKSIZE


def create_tar_archive(
    root: str,
    contents_only: bool = False,
    arcname: Optional[str] = None,
) -> bytes:
    """Buffered variant of iter_tar_archive()."""
    return b"".join(iter_tar_archive(root, contents_only=contents_only, arcname=arcname))


# ── Docker transport ─────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def docker_client():
    """Connect using DOCKER_HOST & co. and negotiate the API version."""
    try:
        client = await asyncio.to_thread(docker.from_env, version="auto")
    except docker.errors.DockerException as e:
        raise RuntimeConnectionError(f"failed to create Docker client: {e}") from e
    try:
        yield client
    finally:
        await asyncio.to_thread(client.close)


async def _get_container(client, container_id: str):
    try:
        return await asyncio.to_thread(client.containers.get, container_id)
    except docker.errors.NotFound as e:
        raise ContainerNotFound(
            f"failed to inspect container {container_id}: {e.explanation or e}"
        ) from e
    except docker.errors.APIError as e:
        raise CopyFailed(f"failed to inspect container {container_id}: {e}") from e


async def copy_to_container(
    container_id: str,
    target_path: str,
    archive,
    dest_dir: Optional[str] = None,
) -> None:
    """
    Extract ``archive`` (bytes or an iterable of chunks) at ``target_path``.

    ``dest_dir`` (default: ``target_path``) is created first, parents
    included, so it exists even when the archive is empty and regardless
    of whether the runtime creates missing directories on extraction.
    """
    dest_dir = dest_dir or target_path
    async with docker_client() as client:
        container = await _get_container(client, container_id)

        try:
            await run_command(
                client, container_id, ["mkdir", "-p", dest_dir],
                timeout=DEFAULT_COMMAND_TIMEOUT,
            )
        except CommandError as e:
            raise CopyFailed(f"failed to create {dest_dir}: {e}") from e

        t0 = time.perf_counter()
        try:
            ok = await asyncio.to_thread(container.put_archive, target_path, archive)
        except docker.errors.APIError as e:
            raise CopyFailed(f"failed to copy to container: {e}") from e
        if not ok:
            raise CopyFailed(f"Docker refused the archive for {target_path}")
        elapsed = (time.perf_counter() - t0) * 1000
        log.info(f"Extracted archive into {container_id}:{target_path} ({elapsed:.0f}ms)")


# ── Command runner ───────────────────────────────────────────────────────


@dataclass
class ExecResult:
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def output(self) -> str:
        """stderr when there is any, otherwise stdout."""
        data = self.stderr if self.stderr else self.stdout
        return data.decode(errors="replace")


def _drain(stream) -> tuple[bytes, bytes]:
    stdout, stderr = bytearray(), bytearray()
    for out, err in stream:
        if out:
            stdout.extend(out)
        if err:
            stderr.extend(err)
    return bytes(stdout), bytes(stderr)


async def run_command(
    client,
    container_id: str,
    cmd: list[str],
    workdir: Optional[str] = None,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
) -> ExecResult:
    """
    Run ``cmd`` in the container and wait for it to finish.

    Output is read on a worker thread while the session is polled; the
    reader is joined before the exit code is looked at, so the result
    always carries the complete output. ``timeout`` (seconds) bounds the
    whole wait; None waits forever.

    Raises CommandFailed on a non-zero exit, CommandTimeout when the
    deadline passes and CommandError when Docker rejects the session
    (e.g. the container is not running).
    """
    if poll_interval is None:
        poll_interval = POLL_INTERVAL
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    label = " ".join(cmd)
    api = client.api

    kwargs = {"stdout": True, "stderr": True}
    if workdir:
        kwargs["workdir"] = workdir
    try:
        exec_id = (await asyncio.to_thread(api.exec_create, container_id, cmd, **kwargs))["Id"]
        stream = await asyncio.to_thread(api.exec_start, exec_id, stream=True, demux=True)
    except docker.errors.APIError as e:
        raise CommandError(f"failed to start {label!r} in {container_id}: {e}") from e
    reader = asyncio.ensure_future(asyncio.to_thread(_drain, stream))

    try:
        while True:
            try:
                info = await asyncio.to_thread(api.exec_inspect, exec_id)
            except docker.errors.APIError as e:
                raise CommandError(f"failed to inspect {label!r}: {e}") from e
            if not info.get("Running"):
                break
            if deadline is not None and loop.time() >= deadline:
                raise CommandTimeout(f"{label!r} still running after {timeout}s")
            await asyncio.sleep(poll_interval)

        remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(reader), remaining)
        except asyncio.TimeoutError:
            raise CommandTimeout(f"output of {label!r} not drained after {timeout}s") from None
        except docker.errors.DockerException as e:
            raise CommandError(f"lost output of {label!r}: {e}") from e
    except BaseException:
        # Closing the stream unblocks the reader thread.
        _close_stream(stream)
        reader.add_done_callback(_discard_result)
        raise

    exit_code = info.get("ExitCode")
    result = ExecResult(
        exit_code=-1 if exit_code is None else exit_code,
        stdout=stdout,
        stderr=stderr,
    )
    log.debug(f"exec {label!r} in {container_id} -> {result.exit_code}")
    if result.exit_code != 0:
        raise CommandFailed(result.exit_code, result.output, command=label, result=result)
    return result


def _close_stream(stream) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except (OSError, ValueError) as e:
        log.debug(f"Closing exec stream failed: {e!r}")


def _discard_result(fut: asyncio.Future) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        log.debug(f"Output reader finished with {fut.exception()!r}")


async def execute_command(
    container_id: str,
    cmd: list[str],
    workdir: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ExecResult:
    """run_command() on a connection of its own."""
    async with docker_client() as client:
        return await run_command(client, container_id, cmd, workdir=workdir, timeout=timeout)


async def get_container_home_dir(client, container_id: str) -> str:
    """$HOME of the container's default user, /root when unset."""
    result = await run_command(client, container_id, ["sh", "-c", "echo $HOME"])
    home = result.stdout.decode(errors="replace").strip()
    return home or DEFAULT_HOME_DIR


async def lookup_home_dir(container_id: str) -> str:
    async with docker_client() as client:
        await _get_container(client, container_id)
        return await get_container_home_dir(client, container_id)


# ── MCP server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "container-copy",
    instructions=(
        "Copy a local project directory into a running Docker container. "
        "By default the directory's contents land in "
        f"{BASE_DIR}; pass dest_dir to place the tree elsewhere "
        f"(relative paths are under {BASE_DIR}, '~' is the container user's home). "
        "Optional commands run afterwards inside the destination directory."
    ),
)


def _format_result(command: str, result: ExecResult) -> str:
    parts = [f"$ {command}"]
    stdout = result.stdout.decode(errors="replace")
    stderr = result.stderr.decode(errors="replace")
    if stdout:
        parts.append(_truncate(stdout.rstrip("\n")))
    if stderr:
        parts.append(f"[stderr] {_truncate(stderr.rstrip())}")
    return "\n".join(parts)


def _format_error(exc: BaseException) -> str:
    if isinstance(exc, CopyProjectError):
        return f"Error {exc.stage}: {exc}"
    return f"Error talking to Docker: {exc}"


async def _run_post_copy(
    container_id: str,
    commands: list[str],
    workdir: str,
    timeout: Optional[float],
    outputs: list[str],
) -> None:
    """Run ``commands`` in order, appending each one's output to ``outputs``."""
    async with docker_client() as client:
        for command in commands:
            log.info(f"Running in {container_id}: {command}")
            result = await run_command(
                client, container_id, ["sh", "-c", command], workdir=workdir, timeout=timeout
            )
            outputs.append(_format_result(command, result))


@mcp_server.tool()
async def copy_project(
    container_id: str,
    local_src_dir: str,
    dest_dir: str = "",
    commands: Optional[list[str]] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> str:
    """
    Copy a local directory into a running container.

    Args:
        container_id: ID or name of the target container.
        local_src_dir: Directory on the host to copy.
        dest_dir: Destination inside the container. Empty copies the contents
            straight into /app; relative paths are created under /app;
            absolute paths are used as-is; "~/x" is under the container's $HOME.
            The tree always lands at exactly this path: for a non-empty
            dest_dir the top-level folder is named after the destination,
            not after the source directory.
        commands: Shell commands to run afterwards, in order, from the
            destination directory. Stops at the first failure.
        timeout: Max seconds to wait for each command.

    Returns:
        A confirmation naming source, destination and container, followed by
        command output, or an error message. When a command fails after a
        successful copy, the confirmation and the output of the commands
        that ran before it are kept ahead of the error.
    """
    try:
        container_id = _require(container_id, "container_id")
        source = resolve_source(local_src_dir)
        home_dir = None
        if _is_home_relative(dest_dir):
            home_dir = await lookup_home_dir(container_id)
        plan = plan_copy(container_id, source, dest_dir, home_dir=home_dir)

        log.info(
            f"Copying {plan.source} -> {plan.container_id}:{plan.destination} "
            f"({'contents' if plan.contents_only else 'nested'})"
        )
        archive = iter_tar_archive(
            plan.source, contents_only=plan.contents_only, arcname=plan.archive_root
        )
        await copy_to_container(
            plan.container_id, plan.target_path, archive, dest_dir=plan.destination
        )
    except (CopyProjectError, docker.errors.DockerException) as e:
        log.warning(f"copy_project failed: {e}")
        return _format_error(e)

    message = (
        f"Successfully copied {plan.source} to {plan.destination} "
        f"in container {plan.container_id}"
    )
    if not commands:
        return message

    outputs: list[str] = []
    try:
        await _run_post_copy(plan.container_id, commands, plan.destination, timeout, outputs)
    except (CopyProjectError, docker.errors.DockerException) as e:
        log.warning(f"copy_project: command failed after copy: {e}")
        outputs.append(_format_error(e))
    return "\n\n".join([message, *outputs])


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
