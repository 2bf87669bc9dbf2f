from __future__ import annotations

import io
import itertools
import posixpath
import re
import tarfile
from pathlib import Path

import docker.errors
import pytest

import container_copy_mcp_server as cc


class FakeExec:
    def __init__(self, container: str, cmd: list[str], workdir: str | None):
        self.container = container
        self.cmd = cmd
        self.workdir = workdir
        self.exit_code = 0
        self.stdout = b""
        self.stderr = b""
        self.running_polls = 2
        self.polls = 0
        self.stream = None


class FakeApi:
    """The slice of docker.APIClient used for exec sessions."""

    def __init__(self, runtime: "FakeRuntime"):
        self._runtime = runtime
        self._ids = itertools.count(1)

    def exec_create(self, container, cmd, stdout=True, stderr=True, workdir=None):
        if container not in self._runtime.containers:
            raise docker.errors.NotFound(f"No such container: {container}")
        exec_id = f"exec-{next(self._ids)}"
        ex = FakeExec(container, list(cmd), workdir)
        self._runtime.handle_exec(ex)
        self._runtime.execs[exec_id] = ex
        self._runtime.exec_log.append(ex)
        return {"Id": exec_id}

    def exec_start(self, exec_id, stream=False, demux=False):
        assert stream and demux
        ex = self._runtime.execs[exec_id]
        if ex.stream is not None:
            return ex.stream

        def _frames():
            if ex.stdout:
                yield ex.stdout, None
            if ex.stderr:
                yield None, ex.stderr

        return _frames()

    def exec_inspect(self, exec_id):
        ex = self._runtime.execs[exec_id]
        ex.polls += 1
        running = ex.polls <= ex.running_polls
        return {"Running": running, "ExitCode": None if running else ex.exit_code}


class FakeContainer:
    def __init__(self, runtime: "FakeRuntime", container_id: str):
        self._runtime = runtime
        self.id = container_id

    def put_archive(self, path, data):
        if path not in self._runtime.dirs:
            raise docker.errors.APIError(
                f"Could not find the file {path} in container {self.id}"
            )
        if not isinstance(data, (bytes, bytearray)):
            data = b"".join(data)
        self._runtime.uploads.append((path, bytes(data)))
        self._runtime.extract(path, bytes(data))
        return self._runtime.accept_archives


class FakeContainers:
    def __init__(self, runtime: "FakeRuntime"):
        self._runtime = runtime

    def get(self, container_id):
        try:
            return self._runtime.containers[container_id]
        except KeyError:
            raise docker.errors.NotFound(
                f"No such container: {container_id}",
                explanation=f"No such container: {container_id}",
            ) from None


class FakeDockerClient:
    def __init__(self, runtime: "FakeRuntime"):
        self._runtime = runtime
        self.containers = FakeContainers(runtime)
        self.api = FakeApi(runtime)

    def close(self):
        self._runtime.clients_closed += 1


class FakeRuntime:
    """In-memory stand-in for a Docker daemon with one filesystem per test."""

    def __init__(self):
        self.containers: dict[str, FakeContainer] = {}
        self.dirs: set[str] = {"/"}
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.links: dict[str, str] = {}
        self.uploads: list[tuple[str, bytes]] = []
        self.execs: dict[str, FakeExec] = {}
        self.exec_log: list[FakeExec] = []
        self.scripts: dict[str, tuple[int, bytes, bytes]] = {}
        self.home = "/root"
        self.accept_archives = True
        self.unreachable = False
        self.from_env_kwargs: list[dict] = []
        self.clients_opened = 0
        self.clients_closed = 0
        self._client = None

    def add_container(self, container_id: str) -> FakeContainer:
        container = FakeContainer(self, container_id)
        self.containers[container_id] = container
        return container

    def from_env(self, **kwargs):
        self.from_env_kwargs.append(kwargs)
        if self.unreachable:
            raise docker.errors.DockerException(
                "Error while fetching server API version: connection refused"
            )
        self.clients_opened += 1
        return FakeDockerClient(self)

    def _mkdirs(self, path: str):
        path = posixpath.normpath(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def handle_exec(self, ex: FakeExec):
        cmd = ex.cmd
        if cmd[:2] == ["mkdir", "-p"]:
            for path in cmd[2:]:
                self._mkdirs(path)
            return
        if cmd[0] == "echo":
            ex.stdout = (" ".join(cmd[1:]) + "\n").encode()
            return
        if cmd[:2] != ["sh", "-c"]:
            return
        script = cmd[2]
        if script in self.scripts:
            ex.exit_code, ex.stdout, ex.stderr = self.scripts[script]
        elif script == "echo $HOME":
            ex.stdout = f"{self.home}\n".encode() if self.home else b"\n"
        elif script.startswith("echo "):
            ex.stdout = (script[len("echo "):] + "\n").encode()
        elif m := re.fullmatch(r"exit (\d+)", script):
            ex.exit_code = int(m.group(1))

    def extract(self, path: str, data: bytes):
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar:
                full = posixpath.normpath(posixpath.join(path, member.name))
                self._mkdirs(posixpath.dirname(full))
                self.modes[full] = member.mode
                if member.isdir():
                    self._mkdirs(full)
                elif member.issym():
                    self.links[full] = member.linkname
                elif member.isreg():
                    self.files[full] = tar.extractfile(member).read()


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch) -> FakeRuntime:
    runtime = FakeRuntime()
    runtime.add_container("c0ffee")
    monkeypatch.setattr(cc.docker, "from_env", runtime.from_env)
    monkeypatch.setattr(cc, "POLL_INTERVAL", 0.001)
    return runtime


@pytest.fixture
def project_tree(tmp_path: Path) -> Path:
    """proj/{a.txt, sub/b.txt}"""
    root = tmp_path / "proj"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("alpha\n")
    (root / "sub" / "b.txt").write_text("bravo\n")
    return root
