"""Shared pytest fixtures: fake child processes standing in for R."""

import asyncio
from typing import Callable, List, Optional

import pytest

from rbridge.config import RBridgeConfig


class FakeStdin:
    """Records writes; ``on_write`` lets a test answer like the child would."""

    def __init__(self):
        self.written: List[bytes] = []
        self.on_write: Optional[Callable[[bytes], None]] = None
        self.broken = False

    def write(self, data: bytes) -> None:
        self.written.append(data)
        if self.on_write is not None:
            self.on_write(data)

    async def drain(self) -> None:
        if self.broken:
            raise BrokenPipeError("pipe closed")

    @property
    def text(self) -> str:
        return b"".join(self.written).decode("utf-8")


class FakeProcess:
    """Mimics asyncio.subprocess.Process with in-memory pipes."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Async stand-in for asyncio.create_subprocess_exec."""

    def __init__(self, factory: Optional[Callable[[], FakeProcess]] = None):
        self.factory = factory or FakeProcess
        self.calls: List[tuple] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, *args, **kwargs) -> FakeProcess:
        self.calls.append((args, kwargs))
        process = self.factory()
        self.processes.append(process)
        return process


@pytest.fixture
def fake_r(tmp_path):
    """An existing file to use as the R executable path."""
    executable = tmp_path / "bin" / "R"
    executable.parent.mkdir()
    executable.write_text("#!/bin/sh\n")
    return str(executable)


@pytest.fixture
def config(fake_r, tmp_path):
    return RBridgeConfig(
        r_executable_path=fake_r,
        scratch_root=str(tmp_path / "scratch"),
        artifact_root=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def process_factory():
    return FakeProcess
