"""Session process management.

Each session key (usually a document path) maps to exactly one long-lived
R process. Processes are spawned lazily, seeded with an initialization
preamble once, and killed together when the owning application shuts down.

Output is pumped from the child's pipes by background tasks and fanned out
to whichever listeners are attached at the time. Evaluations attach a
listener for their own duration and hold the session's ``turn`` lock, so
two evaluations against the same key run one after the other instead of
racing over the same output stream.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import RBridgeConfig
from .errors import ProcessUnavailable, SessionClosedError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

Spawner = Callable[..., Awaitable[Any]]


class StreamListener:
    """Receives output from a session process. Override what you need."""

    def on_stdout(self, data: bytes) -> None:
        pass

    def on_stderr(self, data: bytes) -> None:
        pass

    def on_exit(self, error: SessionClosedError) -> None:
        pass


class SessionProcess:
    """A running child process plus its output pumps and listeners."""

    def __init__(self, key: str, process: Any):
        self.key = key
        self._process = process
        self._listeners: List[StreamListener] = []
        self._pump_tasks: List[asyncio.Task] = []
        self._closed = False
        self._exit_callbacks: List[Callable[["SessionProcess"], None]] = []
        self.turn = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return getattr(self._process, "pid", None)

    @property
    def is_alive(self) -> bool:
        return not self._closed and getattr(self._process, "returncode", None) is None

    def start(self) -> None:
        """Start pumping stdout and stderr."""
        if self._pump_tasks:
            return
        self._pump_tasks = [
            asyncio.ensure_future(self._pump(self._process.stdout, "stdout")),
            asyncio.ensure_future(self._pump(self._process.stderr, "stderr")),
        ]

    def add_exit_callback(self, callback: Callable[["SessionProcess"], None]) -> None:
        self._exit_callbacks.append(callback)

    def attach(self, listener: StreamListener) -> None:
        if self._closed:
            listener.on_exit(SessionClosedError(f"Session {self.key!r} is closed"))
            return
        self._listeners.append(listener)

    def detach(self, listener: StreamListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def write(self, text: str) -> None:
        """Write text to the process's stdin."""
        if not self.is_alive:
            raise SessionClosedError(f"Session {self.key!r} is closed")
        self._process.stdin.write(text.encode("utf-8"))

    async def drain(self) -> None:
        try:
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._mark_closed(f"stdin closed: {exc}")
            raise SessionClosedError(f"Session {self.key!r} is closed") from exc

    async def _pump(self, stream: Any, kind: str) -> None:
        while True:
            try:
                data = await stream.read(READ_CHUNK_SIZE)
            except (ConnectionResetError, BrokenPipeError):
                data = b""
            if not data:
                break
            for listener in list(self._listeners):
                if kind == "stdout":
                    listener.on_stdout(data)
                else:
                    listener.on_stderr(data)
        self._mark_closed(f"{kind} reached EOF")

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"Session {self.key!r} (pid {self.pid}) closed: {reason}")
        error = SessionClosedError(f"Session {self.key!r} closed: {reason}")
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.on_exit(error)
        for callback in self._exit_callbacks:
            callback(self)

    def kill(self) -> None:
        """Signal termination; in-flight listeners are failed immediately."""
        if getattr(self._process, "returncode", None) is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
        self._mark_closed("killed")

    async def wait(self, timeout: float = 5.0) -> Optional[int]:
        """Wait for the process to exit, force-killing it after ``timeout``."""
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._process.kill()
            await self._process.wait()
        for task in self._pump_tasks:
            task.cancel()
        await asyncio.gather(*self._pump_tasks, return_exceptions=True)
        return getattr(self._process, "returncode", None)


class SessionRegistry:
    """Maps session keys to live R processes.

    Owned by the application context; there is no module-level registry.
    """

    def __init__(
        self,
        config: RBridgeConfig,
        preamble: Optional[str] = None,
        spawner: Optional[Spawner] = None,
    ):
        if preamble is None:
            from .evaluation.program import build_session_preamble
            preamble = build_session_preamble(config)
        self._config = config
        self._preamble = preamble
        self._spawner = spawner or asyncio.create_subprocess_exec
        self._sessions: Dict[str, SessionProcess] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, key: str) -> Optional[SessionProcess]:
        return self._sessions.get(key)

    @property
    def keys(self) -> List[str]:
        return list(self._sessions)

    async def resolve(self, key: str) -> SessionProcess:
        """Return the live process for ``key``, spawning it on first use.

        Raises:
            ProcessUnavailable: If the R executable does not exist.
        """
        session = self._sessions.get(key)
        if session is not None and session.is_alive:
            return session

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self._sessions.get(key)
            if session is not None and session.is_alive:
                return session
            session = await self._spawn(key)
            self._sessions[key] = session
            return session

    async def _spawn(self, key: str) -> SessionProcess:
        executable = self._config.resolve_executable()
        if not os.path.exists(executable):
            raise ProcessUnavailable(executable, key)

        try:
            process = await self._spawner(
                executable,
                *self._config.eval_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._config.child_environment(),
            )
        except OSError as exc:
            logger.error(f"Failed to start R process for {key!r}: {exc}")
            raise ProcessUnavailable(executable, key) from exc

        session = SessionProcess(key, process)
        session.add_exit_callback(self._forget)
        session.start()
        try:
            session.write(self._preamble + "\n")
            await session.drain()
        except Exception:
            logger.error(f"Failed to initialize R session {key!r} (pid {session.pid})")
            session.kill()
            await session.wait()
            raise
        logger.info(f"Started R session {key!r} (pid {session.pid})")
        return session

    def _drop_lock(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def _forget(self, session: SessionProcess) -> None:
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
            self._drop_lock(session.key)

    def kill(self, key: str) -> bool:
        session = self._sessions.pop(key, None)
        self._drop_lock(key)
        if session is None:
            return False
        session.kill()
        return True

    def kill_all(self) -> List[SessionProcess]:
        """Signal every session process to terminate and clear the map.

        Returns:
            The killed sessions, so callers can wait for them to exit.
        """
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.kill()
            self._drop_lock(session.key)
        if sessions:
            logger.info(f"Killed {len(sessions)} R session(s)")
        return sessions

    async def close_all(self, timeout: float = 5.0) -> int:
        """Kill every session and wait until each process has been reaped."""
        sessions = self.kill_all()
        await asyncio.gather(*(session.wait(timeout) for session in sessions))
        return len(sessions)
