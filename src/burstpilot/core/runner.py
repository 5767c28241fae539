"""Agent process runner, one subprocess per execution burst.

The agent is launched with an argument vector (never through a shell):
``<agent_command...> -p <prompt>``.  Its stdout and stderr are read by
two daemon threads; stderr lines carry an ``[ERR] `` prefix so both
streams read as one unified log.  Every line is appended to the task's
durable log file here and then handed to ``on_line``.  When the process
is gone, ``on_exit`` fires exactly once with an :class:`ExitStatus`.

A burst that cannot be started (missing executable, permission
denied, unusable log directory) does not raise: it produces an
``ExitStatus`` with ``spawn_error`` set, delivered through the same
``on_exit`` path.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
from typing import IO, Callable, Optional

logger = logging.getLogger("burstpilot.runner")

ERR_PREFIX = "[ERR] "
SPAWN_ERROR_PREFIX = "[SPAWN ERROR] "


@dataclass(frozen=True)
class ExitStatus:
    returncode: Optional[int]
    spawn_error: str = ""

    @property
    def spawn_failed(self) -> bool:
        return bool(self.spawn_error)

    @property
    def ok(self) -> bool:
        return not self.spawn_failed and self.returncode == 0

    def describe(self) -> str:
        if self.spawn_failed:
            return f"spawn failed: {self.spawn_error}"
        return f"exit code: {self.returncode}"


LineCallback = Callable[["RunHandle", str], None]
ExitCallback = Callable[["RunHandle", ExitStatus], None]


class RunHandle:
    """Owns one agent subprocess for the duration of a single burst."""

    def __init__(
        self,
        burst_id: int,
        log_path: str,
        on_line: LineCallback,
        on_exit: ExitCallback,
    ) -> None:
        self.burst_id = burst_id
        self.log_path = log_path
        self._on_line = on_line
        self._on_exit = on_exit
        self._process: Optional[subprocess.Popen] = None
        self._log_lock = threading.Lock()
        self._exit_status: Optional[ExitStatus] = None
        self._exited = threading.Event()
        self.terminate_requests = 0

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        return self._exit_status

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exit event has fired.  Returns False on timeout."""
        return self._exited.wait(timeout)

    # ── process control ───────────────────────────────────────

    def terminate(self, force: bool = False) -> None:
        """Ask the agent to exit (SIGTERM) or kill it outright (SIGKILL).

        Does not wait: the exit is confirmed by the ``on_exit`` event.
        """
        self.terminate_requests += 1
        proc = self._process
        if proc is None or proc.poll() is not None:
            return
        logger.info(
            "%s agent process (pid=%s, burst=%s)",
            "Killing" if force else "Terminating", proc.pid, self.burst_id,
        )
        try:
            if sys.platform == "win32":
                if force:
                    # /T takes down the agent's node/tool children too
                    subprocess.run(
                        ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                        capture_output=True,
                        timeout=15,
                    )
                else:
                    proc.terminate()
            else:
                sig = signal.SIGKILL if force else signal.SIGTERM
                try:
                    os.killpg(proc.pid, sig)
                except (ProcessLookupError, PermissionError):
                    proc.send_signal(sig)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("Error terminating agent process %s: %s", proc.pid, exc)

    # ── internals ────────────────────────────────────────────

    def _append_log(self, line: str) -> None:
        try:
            with self._log_lock:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as exc:
            logger.error("Failed to append to log %s: %s", self.log_path, exc)

    def _emit(self, line: str) -> None:
        self._append_log(line)
        try:
            self._on_line(self, line)
        except Exception as exc:  # noqa: BLE001
            logger.error("on_line callback failed: %s", exc)

    def _finish(self, status: ExitStatus) -> None:
        if self._exited.is_set():
            return
        self._exit_status = status
        self._exited.set()
        try:
            self._on_exit(self, status)
        except Exception as exc:  # noqa: BLE001
            logger.error("on_exit callback failed: %s", exc, exc_info=True)

    def _pump(self, stream: IO[str], prefix: str, tag: str) -> None:
        for raw in stream:
            line = raw.rstrip("\r\n")
            if not line:
                continue
            logger.debug("[%s] %s", tag, line[:200])
            self._emit(prefix + line)
        stream.close()

    def _spawn_failed(self, argv: list[str], exc: Exception) -> None:
        logger.error("Failed to spawn agent %s: %s", argv[0] if argv else "?", exc)
        self._emit(f"{SPAWN_ERROR_PREFIX}{exc}")
        # Delivered from its own thread, like a real exit
        threading.Thread(
            target=self._finish,
            args=(ExitStatus(returncode=None, spawn_error=str(exc)),),
            name=f"burst-{self.burst_id}-spawn-failed",
            daemon=True,
        ).start()

    def _launch(self, argv: list[str], cwd: str, env: dict[str, str]) -> None:
        try:
            self._process = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                # Own process group so a kill reaches the agent's children
                start_new_session=sys.platform != "win32",
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
            )
        except (OSError, ValueError) as exc:
            self._spawn_failed(argv, exc)
            return

        logger.info("Agent process started (pid=%s, burst=%s, cwd=%s)", self._process.pid, self.burst_id, cwd)
        assert self._process.stdout is not None and self._process.stderr is not None
        readers = [
            threading.Thread(
                target=self._pump,
                args=(self._process.stdout, "", "STDOUT"),
                name=f"burst-{self.burst_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(self._process.stderr, ERR_PREFIX, "STDERR"),
                name=f"burst-{self.burst_id}-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        def _wait() -> None:
            assert self._process is not None
            returncode = self._process.wait()
            for reader in readers:
                reader.join()
            logger.info("Agent process exited (pid=%s, code=%s)", self._process.pid, returncode)
            self._finish(ExitStatus(returncode=returncode))

        threading.Thread(target=_wait, name=f"burst-{self.burst_id}-wait", daemon=True).start()


class ProcessRunner:
    """Spawns the external agent command for each execution burst."""

    def __init__(self, agent_command: str = "claude") -> None:
        self.agent_command = agent_command

    def build_argv(self, prompt: str) -> list[str]:
        return [*shlex.split(self.agent_command), "-p", prompt]

    def run(
        self,
        prompt: str,
        working_dir: str,
        log_path: str,
        on_line: LineCallback,
        on_exit: ExitCallback,
        burst_id: int = 0,
    ) -> RunHandle:
        handle = RunHandle(burst_id=burst_id, log_path=log_path, on_line=on_line, on_exit=on_exit)
        argv = self.build_argv(prompt)
        logger.info("Running agent: %s -p <%d chars> (cwd=%s)", " ".join(argv[:-2]), len(prompt), working_dir)

        env = os.environ.copy()
        env.setdefault("TERM", "dumb")
        env["PYTHONIOENCODING"] = "utf-8"

        try:
            os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        except OSError as exc:
            handle._spawn_failed(argv, exc)
            return handle
        handle._launch(argv, working_dir, env)
        return handle
