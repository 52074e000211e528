"""
Flotilla Local Platform

Launches members as operating system processes on this machine. Each
process is reaped by a daemon watcher thread, so a process that dies on its
own (crash, external kill) is reported to close listeners without polling.
"""

from __future__ import annotations

import os
import subprocess
import threading
from typing import Any, Dict, List, Optional

import psutil
import structlog

from flotilla.core.config import get_config
from flotilla.runtime.models import role_prefix
from flotilla.runtime.options import (
    ClusterName,
    ClusterPort,
    Discriminator,
    EnvironmentVariables,
    Option,
    OptionsByType,
    Timeout,
    WorkingDirectory,
)
from flotilla.runtime.platform import AbstractProcessHandle, LaunchError, Platform, Role

logger = structlog.get_logger(__name__)


class LocalProcessHandle(AbstractProcessHandle):
    """A process started by LocalPlatform."""

    def __init__(
        self,
        name: str,
        process: subprocess.Popen,
        close_timeout: Optional[float] = None,
    ):
        super().__init__(name)
        self._process = process
        self._close_timeout = (
            get_config().local.close_timeout if close_timeout is None else close_timeout
        )
        self._close_lock = threading.Lock()
        self._exit_code: Optional[int] = None

        self._watcher = threading.Thread(
            target=self._watch,
            name=f"flotilla-watch-{name}",
            daemon=True,
        )
        self._watcher.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def _watch(self) -> None:
        """Reap the process and report its termination."""
        exit_code = self._process.wait()
        self._exit_code = exit_code

        if self._fire_closed():
            logger.info("Process terminated", process=self.name, pid=self.pid, exit_code=exit_code)

    def _terminate_tree(self, timeout: float) -> None:
        """Terminate the process and its descendants, killing what outlives the timeout."""
        try:
            children: List[psutil.Process] = psutil.Process(self.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass

        if self._process.poll() is None:
            self._process.terminate()

        _, alive = psutil.wait_procs(children, timeout=timeout)
        for child in alive:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Process ignored terminate, killing", process=self.name, pid=self.pid)
            self._process.kill()
            self._process.wait()

    def close(self, *options: Option) -> None:
        # an already closed handle still reaches _fire_closed(), which waits
        # for a watcher that may be notifying listeners
        timeout = OptionsByType.of(*options).get_or_default(Timeout, None)
        seconds = timeout.seconds if timeout is not None else self._close_timeout

        with self._close_lock:
            if self._process.poll() is None:
                self._terminate_tree(seconds)
            self._exit_code = self._process.returncode

        if self._fire_closed():
            logger.info("Process closed", process=self.name, pid=self.pid, exit_code=self._exit_code)

    def is_operational(self) -> bool:
        if self.is_closed or self._process.poll() is not None:
            return False
        try:
            return psutil.Process(self.pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def wait_for(self, timeout: Optional[float] = None) -> int:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"{self.name} still running after {timeout}s") from e


class LocalPlatform(Platform):
    """The machine this interpreter runs on."""

    def __init__(self, name: str = "local", close_timeout: Optional[float] = None):
        super().__init__(name)
        self._close_timeout = close_timeout

    def _environment(self, name: str, options: OptionsByType) -> Dict[str, str]:
        variables = options.get(EnvironmentVariables)
        environment = dict(os.environ) if variables.inherit else {}
        environment.update(variables.variables)

        environment["FLOTILLA_MEMBER_NAME"] = name

        cluster_name = options.get_or_default(ClusterName, None)
        if cluster_name is not None:
            environment["FLOTILLA_CLUSTER_NAME"] = cluster_name.value

        cluster_port = options.get_or_default(ClusterPort, None)
        if cluster_port is not None:
            environment["FLOTILLA_CLUSTER_PORT"] = str(cluster_port.port)

        return environment

    def launch(self, role: Any, *options: Option) -> LocalProcessHandle:
        launch_options = OptionsByType.of(*options)

        prefix = role_prefix(role, launch_options)
        discriminator = launch_options.get_or_default(Discriminator, None)
        name = f"{prefix}-{discriminator.value}" if discriminator is not None else prefix

        command_factory = getattr(role, "command", None)
        command = command_factory(launch_options) if callable(command_factory) else Role.command(launch_options)

        working_directory = launch_options.get_or_default(WorkingDirectory, None)
        output = None if get_config().local.inherit_output else subprocess.DEVNULL

        try:
            process = subprocess.Popen(
                command,
                cwd=working_directory.path if working_directory is not None else None,
                env=self._environment(name, launch_options),
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=output,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise LaunchError(
                f"Failed to launch {name} on {self.name}: {e}",
                role=role,
                options=launch_options,
            ) from e

        logger.info("Launched process", process=name, pid=process.pid, platform=self.name)

        return LocalProcessHandle(name, process, close_timeout=self._close_timeout)
