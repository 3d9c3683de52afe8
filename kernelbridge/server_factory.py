"""
Builds started KernelSessions, either on a freshly launched local notebook
server or on a remote server given by URI.
"""
import logging
import os
import shutil
import sys
import tempfile
from typing import Callable, List, Mapping, Optional, Protocol, Sequence

from .connection import ConnectionNegotiator
from .core.cancellation import CancellationToken, race
from .core.config import BridgeConfig
from .core.interceptors import InterceptorChain
from .execution import ExecutionLogger
from .kernel_session import KernelSession
from .models import LaunchOptions
from .process_launcher import ProcessLauncher

_EMPTY_CONFIG_NAME = "jupyter_notebook_config.py"


class ProcessDiscovery(Protocol):
    """Supplies the interpreter used to run the notebook server."""

    def interpreter_path(self) -> str:
        ...

    def environment(self) -> Mapping[str, str]:
        ...


class InterpreterDiscovery:
    """Runs the notebook server with the current interpreter unless told otherwise."""

    def __init__(self, executable: Optional[str] = None, env: Optional[Mapping[str, str]] = None):
        self._executable = executable
        self._env = env

    def interpreter_path(self) -> str:
        return self._executable or sys.executable

    def environment(self) -> Mapping[str, str]:
        return dict(self._env if self._env is not None else os.environ)


def write_empty_config() -> str:
    """Create a temporary directory holding an empty notebook config file."""
    config_dir = tempfile.mkdtemp(prefix="kernelbridge-config-")
    with open(os.path.join(config_dir, _EMPTY_CONFIG_NAME), "w") as f:
        f.write("")
    return config_dir


def build_notebook_args(working_dir: Optional[str], config_dir: Optional[str] = None) -> List[str]:
    """
    Arguments passed to the interpreter to start a notebook server.

    Args:
        working_dir: Notebook directory of the server (current directory when None)
        config_dir: Directory holding an isolated config file, when the user's config must be ignored
    """
    args = [
        "-m",
        "jupyter",
        "notebook",
        "--no-browser",
        f"--notebook-dir={working_dir or os.getcwd()}",
    ]
    if config_dir:
        args.append(f"--config={os.path.join(config_dir, _EMPTY_CONFIG_NAME)}")
    return args


class ServerFactory:
    """
    Creates and starts KernelSessions. Never caches; see ServerCache.
    """

    def __init__(
        self,
        discovery: Optional[ProcessDiscovery] = None,
        launcher: Optional[ProcessLauncher] = None,
        negotiator: Optional[ConnectionNegotiator] = None,
        interceptors: Optional[InterceptorChain] = None,
        execution_loggers: Sequence[ExecutionLogger] = (),
    ):
        self.discovery = discovery or InterpreterDiscovery()
        self.launcher = launcher or ProcessLauncher()
        self.negotiator = negotiator or ConnectionNegotiator()
        self.interceptors = interceptors or InterceptorChain()
        self.execution_loggers = list(execution_loggers)
        self._logger = logging.getLogger("kernelbridge.server_factory")

    async def create(
        self,
        options: LaunchOptions,
        config: BridgeConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> KernelSession:
        """
        Launch or connect to a server and start a kernel session on it.

        Raises:
            LaunchError, ProcessExitedError, ConnectionNegotiationError: If no server could be reached
            OperationCanceledError: If cancel_token fires; anything created so far is released
        """
        cancel_token = cancel_token or CancellationToken.none()
        cancel_token.raise_if_cancelled()

        if options.uri:
            connection = await self.negotiator.from_uri(
                options.uri, config.launch_timeout_ms, config.allow_unauthorized_remote, cancel_token
            )
            session = self._new_session(connection, options, config)
        else:
            session = await self._launch(options, config, cancel_token)

        await race(session.start(), cancel_token, "Kernel session creation canceled")
        return session

    def _new_session(self, connection, options, config, process=None, cleanup=()) -> KernelSession:
        return KernelSession(
            connection,
            config,
            options,
            process=process,
            interceptors=self.interceptors,
            execution_loggers=self.execution_loggers,
            cleanup=cleanup,
        )

    async def _launch(self, options: LaunchOptions, config: BridgeConfig, cancel_token: CancellationToken) -> KernelSession:
        config_dir = write_empty_config() if options.use_default_config else None
        cleanup: List[Callable[[], None]] = []
        if config_dir:
            cleanup.append(lambda: shutil.rmtree(config_dir, ignore_errors=True))

        try:
            handle = await self.launcher.launch(
                self.discovery.interpreter_path(),
                build_notebook_args(options.working_dir, config_dir),
                env=self.discovery.environment(),
                cwd=options.working_dir,
            )
        except BaseException:
            for callback in cleanup:
                callback()
            raise

        try:
            connection = await self.negotiator.from_process(handle, config.launch_timeout_ms, cancel_token)
        except BaseException as e:
            self._logger.warning(f"Notebook server {handle.pid} did not become reachable: {e!r}")
            await handle.terminate(timeout=config.shutdown_timeout_ms / 1000.0)
            for callback in cleanup:
                callback()
            raise

        handle.stop_buffering()
        self._logger.info(f"Notebook server {handle.pid} listening on {connection.display_name}")
        return self._new_session(connection, options, config, process=handle, cleanup=cleanup)
