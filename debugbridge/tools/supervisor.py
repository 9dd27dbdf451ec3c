from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from ..core.errors import LaunchError
from ..domain.models import SupervisorState

logger = logging.getLogger(__name__)

IS_POSIX = os.name == "posix"


def build_launch_args(debug_port: int, staging_dir: Path) -> list[str]:
    return [f"--remote-debugging-port={debug_port}", f"--user-data-dir={staging_dir}"]


def _is_active(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ResourceGroup:
    """A set of processes that is terminated as a whole when closed.

    The root is spawned as the leader of a new session, so on POSIX every
    descendant starts out in the same process group without any window
    between spawn and group assignment. Descendants are also recorded by
    parentage so members that leave the process group, and platforms
    without process groups, are still covered.
    """

    def __init__(self, grace_secs: float = 3.0) -> None:
        self.grace_secs = grace_secs
        self.proc: subprocess.Popen | None = None
        self.pgid: int | None = None
        self.created_at = time.time()
        self._known: dict[int, psutil.Process] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def root_pid(self) -> int | None:
        return self.proc.pid if self.proc else None

    def spawn(self, argv: Sequence[str], cwd: Path | None = None) -> subprocess.Popen:
        if self._closed:
            raise RuntimeError("resource group is closed")
        if self.proc is not None:
            raise RuntimeError("resource group already has a root process")
        kwargs: dict[str, object] = {}
        if IS_POSIX:
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        self.proc = subprocess.Popen(
            list(argv),
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            **kwargs,  # type: ignore[arg-type]
        )
        if IS_POSIX:
            self.pgid = self.proc.pid
        self._record(self.proc.pid)
        return self.proc

    def _record(self, pid: int) -> None:
        if pid in self._known:
            return
        try:
            self._known[pid] = psutil.Process(pid)
        except psutil.Error:
            pass

    def _belongs(self, proc: psutil.Process, known_pids: set[int]) -> bool:
        if self.pgid is not None:
            try:
                if os.getpgid(proc.pid) == self.pgid:
                    return True
            except OSError:
                pass
        try:
            return proc.ppid() in known_pids and proc.create_time() >= self.created_at - 1.0
        except psutil.Error:
            return False

    def _scan(self) -> None:
        """Record every process that is in the group or descends from a member."""
        try:
            snapshot = list(psutil.process_iter())
        except psutil.Error as exc:
            logger.debug("process scan failed: %s", exc)
            return
        changed = True
        while changed:
            changed = False
            known_pids = set(self._known)
            for proc in snapshot:
                if proc.pid in known_pids:
                    continue
                if self._belongs(proc, known_pids):
                    self._known[proc.pid] = proc
                    changed = True

    def members(self) -> list[psutil.Process]:
        """Currently active (non-zombie) members of the group."""
        if self._closed:
            return []
        if self.proc is not None:
            # Reap the root so an exited launcher is not counted as a zombie member
            self.proc.poll()
        self._scan()
        active = [p for p in self._known.values() if _is_active(p)]
        self._known = {p.pid: p for p in active}
        return active

    def active_count(self) -> int:
        return len(self.members())

    def close(self) -> None:
        """Terminate every member, escalating to kill after the grace period."""
        if self._closed:
            return
        victims = self.members()
        self._closed = True
        if self.pgid is not None:
            try:
                os.killpg(self.pgid, signal.SIGTERM)
            except OSError:
                pass
        for proc in victims:
            try:
                proc.terminate()
            except psutil.Error:
                pass
        _gone, alive = psutil.wait_procs(victims, timeout=self.grace_secs)
        for proc in alive:
            try:
                proc.kill()
            except psutil.Error:
                pass
        if alive:
            psutil.wait_procs(alive, timeout=1.0)
        if self.pgid is not None and hasattr(signal, "SIGKILL"):
            try:
                os.killpg(self.pgid, signal.SIGKILL)
            except OSError:
                pass
        if self.proc is not None:
            try:
                self.proc.wait(timeout=1.0)
            except (subprocess.TimeoutExpired, OSError):
                pass
        self._known.clear()
        logger.debug("resource group %s closed (%d members)", self.pgid or self.root_pid, len(victims))


@dataclass
class SupervisedProcess:
    group: ResourceGroup
    pid: int
    staging_dir: Path
    started_at: float = field(default_factory=time.time)
    running: bool = True


class ProcessSupervisor:
    """Owns at most one browser process and its resource group.

    State machine: idle -> launching -> running -> terminating -> idle.
    """

    def __init__(
        self,
        terminate_grace_secs: float = 3.0,
        staging_prefix: str = "debugbridge_profile_",
        staging_root: Path | None = None,
    ) -> None:
        self.terminate_grace_secs = terminate_grace_secs
        self.staging_prefix = staging_prefix
        self.staging_root = staging_root
        self.state = SupervisorState.IDLE
        self.current: SupervisedProcess | None = None
        self.launches_total = 0
        self.launch_failures_total = 0

    @property
    def pid(self) -> int | None:
        return self.current.pid if self.current else None

    @property
    def running(self) -> bool:
        return self.state == SupervisorState.RUNNING

    def _make_staging_dir(self) -> Path:
        if self.staging_root is not None:
            self.staging_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=self.staging_prefix, dir=self.staging_root))

    def launch(self, path: str, debug_port: int, extra_args: Sequence[str] = ()) -> SupervisedProcess:
        """Start ``path`` with remote debugging inside a fresh resource group.

        Raises LaunchError on any failure; the supervisor is idle afterwards.
        """
        if self.current is not None or self.state != SupervisorState.IDLE:
            logger.warning("launch requested while a process exists (pid=%s); terminating it first", self.pid)
            self.terminate()
        if not path:
            raise LaunchError("no executable configured")

        self.state = SupervisorState.LAUNCHING
        staging_dir: Path | None = None
        group: ResourceGroup | None = None
        try:
            staging_dir = self._make_staging_dir()
            group = ResourceGroup(grace_secs=self.terminate_grace_secs)
            argv = [path, *build_launch_args(debug_port, staging_dir), *extra_args]
            proc = group.spawn(argv)
        except (OSError, ValueError, RuntimeError) as exc:
            self.launch_failures_total += 1
            if group is not None:
                try:
                    group.close()
                except Exception:
                    logger.debug("group close during unwind failed", exc_info=True)
            if staging_dir is not None:
                shutil.rmtree(staging_dir, ignore_errors=True)
            self.state = SupervisorState.IDLE
            raise LaunchError(f"failed to launch {path}: {exc}") from exc

        self.current = SupervisedProcess(group=group, pid=proc.pid, staging_dir=staging_dir)
        self.state = SupervisorState.RUNNING
        self.launches_total += 1
        logger.info("Launched %s (pid=%d, profile=%s)", path, proc.pid, staging_dir)
        return self.current

    def is_alive(self) -> bool:
        """True while the resource group has at least one active member.

        The launched process itself may exit early while its descendants
        keep running; only the group counts.
        """
        current = self.current
        if current is None or current.group.closed:
            return False
        try:
            return current.group.active_count() > 0
        except Exception:
            logger.warning("liveness query failed for pid=%s", current.pid, exc_info=True)
            return True

    def terminate(self) -> None:
        """Close the group and drop the process. Safe from any state; never raises."""
        current = self.current
        if current is None:
            self.state = SupervisorState.IDLE
            return
        self.state = SupervisorState.TERMINATING
        try:
            current.group.close()
        except Exception:
            logger.warning("error closing resource group for pid=%d", current.pid, exc_info=True)
        current.running = False
        shutil.rmtree(current.staging_dir, ignore_errors=True)
        self.current = None
        self.state = SupervisorState.IDLE
        logger.info("Terminated process group (pid=%d)", current.pid)
