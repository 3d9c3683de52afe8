import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from .core.cancellation import CancellationToken, race, with_deadline
from .core.config import BridgeConfig
from .core.interceptors import InterceptorChain
from .exceptions import (
    KernelBridgeError,
    KernelDiedError,
    KernelPromiseTimeoutError,
    KernelRestartedError,
    SessionDisposedError,
)
from .execution import ExecutionLogger, ExecutionPipeline
from .jupyter_api import JupyterServerClient, KernelChannels
from .models import Cell, CellState, Connection, InterruptResult, KernelSpecInfo, KernelStatus, LaunchOptions
from .process_launcher import ProcessHandle

# Marks the end of a request's message stream
_DONE = object()


class _Failure:
    def __init__(self, error: KernelBridgeError):
        self.error = error


@dataclass
class ExecutionRequest:
    """Represents a queued cell execution request."""

    msg_id: str
    code: str
    silent: bool
    messages: asyncio.Queue
    done: asyncio.Future
    kernel_msg_id: Optional[str] = None
    reply_seen: bool = False
    idle_seen: bool = False
    abandoned: bool = False


class KernelSession:
    """
    Represents a single kernel running on a notebook server and its associated state.

    The session owns the websocket to the kernel and, for local launches, the
    server process. Executions are serialized through one queue and one
    execution loop; a listener task routes kernel messages back to the
    request that caused them.
    """

    def __init__(
        self,
        connection: Connection,
        config: Optional[BridgeConfig] = None,
        options: Optional[LaunchOptions] = None,
        process: Optional[ProcessHandle] = None,
        client: Optional[JupyterServerClient] = None,
        interceptors: Optional[InterceptorChain] = None,
        execution_loggers: Sequence[ExecutionLogger] = (),
        cleanup: Sequence[Callable[[], None]] = (),
    ):
        """
        Initialize a new kernel session.

        Args:
            connection: Endpoint of the notebook server hosting the kernel
            config: Configuration; defaults are used when None
            options: The launch options the session was created for
            process: The server process, when this session launched it and owns it
            client: Wire client; created from the connection on start() when None
            interceptors: Chain wrapped around public operations
            execution_loggers: Observers notified around every executed cell
            cleanup: Callables run once when the session is disposed
        """
        self.id: str = str(uuid.uuid4())
        self.connection = connection
        self.config = config or BridgeConfig()
        self.options = options or LaunchOptions()
        self.process = process
        self.client = client
        self.channels: Optional[KernelChannels] = None
        self.kernel_id: Optional[str] = None
        self.kernel_spec: Optional[KernelSpecInfo] = None
        self.status = KernelStatus.STARTING
        self.execution_count = 0
        self.warnings: List[str] = []
        self.execution_loggers: List[ExecutionLogger] = list(execution_loggers)
        self.created_at = datetime.now()
        self._interceptors = interceptors or InterceptorChain()
        self._cleanup = list(cleanup)
        self._terminated_callbacks: List[Callable[["KernelSession"], None]] = []
        self._terminated = False
        self._logger = logging.getLogger(f"kernelbridge.kernel.{self.id[:8]}")

        self.execution_queue: asyncio.Queue = asyncio.Queue()
        self.current_execution: Optional[ExecutionRequest] = None
        self.msg_id_map: Dict[str, ExecutionRequest] = {}  # kernel msg_id -> request
        self.listener_task: Optional[asyncio.Task] = None
        self.executor_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._dispose_task: Optional[asyncio.Task] = None
        self._kernel_info: Optional[asyncio.Future] = None
        self._settled = asyncio.Event()  # set while idle or dead
        self._restarting = False
        self._disposed = False
        self._dead_reason: Optional[str] = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def is_dead(self) -> bool:
        return self.status == KernelStatus.DEAD

    @property
    def is_healthy(self) -> bool:
        if self._disposed or self.is_dead:
            return False
        return self.process is None or not self.process.exited

    def on_terminated(self, callback: Callable[["KernelSession"], None]) -> None:
        """Call callback(session) once when the session dies or is disposed."""
        if self._terminated:
            callback(self)
        else:
            self._terminated_callbacks.append(callback)

    def add_execution_logger(self, execution_logger: ExecutionLogger) -> None:
        self.execution_loggers.append(execution_logger)

    def info(self) -> Dict[str, Any]:
        """Describe the session for diagnostics. Never includes the token."""
        return {
            "id": self.id,
            "kernel_id": self.kernel_id,
            "kernel_name": self.kernel_spec.name if self.kernel_spec else None,
            "status": self.status.value,
            "execution_count": self.execution_count,
            "server": self.connection.display_name,
            "pid": self.process.pid if self.process else None,
            "purpose": self.options.purpose,
            "created_at": self.created_at.isoformat(),
            "warnings": list(self.warnings),
        }

    def _set_status(self, status: KernelStatus) -> None:
        if self.status == status:
            return
        self._logger.debug(f"Status {self.status.value} -> {status.value}")
        self.status = status
        if status in (KernelStatus.IDLE, KernelStatus.DEAD):
            self._settled.set()
        else:
            self._settled.clear()

    def _ensure_usable(self) -> None:
        if self._dead_reason is not None:
            raise KernelDiedError(self._dead_reason, {"session": self.id})
        if self._disposed or self.is_dead:
            raise SessionDisposedError("Kernel session has been disposed", {"session": self.id})

    # Lifecycle

    async def start(self) -> None:
        """
        Start a kernel on the server and establish communication channels.

        Raises:
            ServerRequestError: If the server rejects a request
            KernelPromiseTimeoutError: If the kernel does not answer kernel_info in time
        """
        await self._interceptors.invoke("start", self._start)

    async def _start(self) -> None:
        self._logger.info(f"Starting kernel session on {self.connection.display_name}")
        try:
            if self.client is None:
                self.client = JupyterServerClient(self.connection)
            if self.process is not None:
                self.process.add_exit_callback(self._on_process_exit)

            self.kernel_spec = await self._select_kernel_spec()
            self.kernel_id = await self.client.start_kernel(self.kernel_spec.name if self.kernel_spec else None)
            await self._open_channels()
            await with_deadline(
                self._wait_for_kernel_info(),
                self.config.kernel_ready_timeout_ms,
                lambda: KernelPromiseTimeoutError(
                    f"Kernel did not become ready within {self.config.kernel_ready_timeout_ms}ms",
                    timeout_ms=self.config.kernel_ready_timeout_ms,
                ),
            )

            self.executor_task = asyncio.create_task(self._execution_loop())
            self._set_status(KernelStatus.IDLE)
            await self._run_initialization()
            self._logger.info(f"Kernel {self.kernel_id[:8]} ({self.kernel_spec_name}) started successfully")
        except (Exception, asyncio.CancelledError) as e:
            self._logger.error(f"Failed to start kernel session: {e!r}")
            await self.dispose()
            raise

    @property
    def kernel_spec_name(self) -> str:
        return self.kernel_spec.name if self.kernel_spec else "server default"

    async def _select_kernel_spec(self) -> Optional[KernelSpecInfo]:
        """Exact name, then same language, then the server default, then anything installed."""
        default_name, specs = await self.client.get_kernel_specs()
        wanted = self.config.kernel_name
        by_name = {spec.name: spec for spec in specs}
        if wanted in by_name:
            return by_name[wanted]

        candidates = [spec for spec in specs if spec.language.lower() == self.config.kernel_language]
        if candidates:
            chosen = candidates[0]
        elif default_name in by_name:
            chosen = by_name[default_name]
        elif specs:
            chosen = specs[0]
        else:
            self._warn(f"Server lists no kernel specs; starting its default kernel instead of '{wanted}'")
            return None

        self._warn(f"Kernel spec '{wanted}' not found; using '{chosen.name}' ({chosen.display_name})")
        return chosen

    def _warn(self, message: str) -> None:
        self._logger.warning(message)
        self.warnings.append(message)

    async def _open_channels(self) -> None:
        self.channels = await self.client.connect_channels(self.kernel_id)
        self.listener_task = asyncio.create_task(self._listen_channels(self.channels))

    async def _wait_for_kernel_info(self) -> None:
        self._kernel_info = asyncio.get_running_loop().create_future()
        while True:
            await self.channels.send("shell", "kernel_info_request")
            try:
                await asyncio.wait_for(asyncio.shield(self._kernel_info), timeout=1.0)
                break
            except asyncio.TimeoutError:
                self._logger.debug("No kernel_info_reply yet, asking again")
        if self.is_dead:
            raise KernelDiedError(self._dead_reason or "Kernel died during startup")

    def _initialization_cells(self) -> List[str]:
        cells = []
        if self.options.working_dir:
            cells.append(f"import os\nos.chdir({self.options.working_dir!r})")
        cells.extend(self.config.startup_code)
        return cells

    async def _run_initialization(self) -> None:
        for code in self._initialization_cells():
            cell = await self._run_to_completion(code, silent=True)
            if cell.state == CellState.ERROR:
                errors = [f"{o.ename}: {o.evalue}" for o in cell.outputs if o.output_type == "error"]
                self._warn(f"Initialization cell failed: {'; '.join(errors)}")

    # Execution

    async def execute(
        self,
        code: str,
        file: str = "",
        line: int = 0,
        cell_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        silent: bool = False,
        config: Optional[BridgeConfig] = None,
    ) -> AsyncIterator[Cell]:
        """
        Execute code and yield Cell snapshots until the Cell is terminal.

        The code is queued on the first iteration; only one execution runs at a time.
        Queuing the code and producing the pending snapshot run through the
        interceptors as the "execute" operation.
        """
        pipeline = ExecutionPipeline(self, config or self.config, self.execution_loggers)
        snapshots = pipeline.run(code, file, line, cell_id, cancel_token, silent)
        try:
            yield await self._interceptors.invoke("execute", lambda: anext(snapshots))
            async for cell in snapshots:
                yield cell
        finally:
            await snapshots.aclose()

    async def execute_to_completion(
        self,
        code: str,
        file: str = "",
        line: int = 0,
        cell_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        silent: bool = False,
        config: Optional[BridgeConfig] = None,
    ) -> Cell:
        """Execute code and return its terminal Cell."""
        return await self._interceptors.invoke(
            "execute_to_completion",
            lambda: self._run_to_completion(code, file, line, cell_id, cancel_token, silent, config),
        )

    async def _run_to_completion(self, code, file="", line=0, cell_id=None, cancel_token=None, silent=False, config=None):
        last = None
        async for cell in self.execute(code, file, line, cell_id, cancel_token, silent, config):
            last = cell
        return last

    def submit(self, code: str, silent: bool = False) -> ExecutionRequest:
        """
        Queue code for execution. Returns immediately with the request.
        Actual execution happens serially in _execution_loop.

        Raises:
            SessionDisposedError: If the session was disposed
            KernelDiedError: If the kernel is dead
        """
        self._ensure_usable()
        request = ExecutionRequest(
            msg_id=uuid.uuid4().hex,
            code=code,
            silent=silent,
            messages=asyncio.Queue(),
            done=asyncio.get_running_loop().create_future(),
        )
        self.execution_queue.put_nowait(request)
        if self.status == KernelStatus.IDLE:
            self._set_status(KernelStatus.BUSY)
        self._logger.debug(f"Queued execution {request.msg_id[:8]}, queue depth: {self.execution_queue.qsize()}")
        return request

    async def stream_messages(
        self, request: ExecutionRequest, cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield the kernel messages of a request until the kernel is done with it.

        Raises:
            KernelDiedError, KernelRestartedError, SessionDisposedError: If the session
                fails the request
            OperationCanceledError: If cancel_token fires first
        """
        while True:
            item = await race(request.messages.get(), cancel_token, "Execution canceled")
            if item is _DONE:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item

    def abandon(self, request: ExecutionRequest) -> None:
        """Stop delivering results of request; it is skipped if it has not started yet."""
        request.abandoned = True
        self._logger.debug(f"Execution {request.msg_id[:8]} abandoned by its consumer")

    def _complete_request(self, request: ExecutionRequest) -> None:
        if request.done.done():
            return
        request.messages.put_nowait(_DONE)
        request.done.set_result(None)
        self.msg_id_map.pop(request.kernel_msg_id, None)

    def _fail_request(self, request: ExecutionRequest, error: KernelBridgeError) -> None:
        if request.done.done():
            return
        request.messages.put_nowait(_Failure(error))
        request.done.set_result(None)
        self.msg_id_map.pop(request.kernel_msg_id, None)

    def _drain_queue(self, error: KernelBridgeError) -> None:
        """
        Fail the running request and everything still queued.
        Used during restart/death/dispose to clean up pending cells.
        """
        drained_count = 0
        if self.current_execution is not None:
            self._fail_request(self.current_execution, error)
            drained_count += 1
        while not self.execution_queue.empty():
            try:
                request = self.execution_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._fail_request(request, error)
            drained_count += 1
        self.msg_id_map.clear()
        if drained_count > 0:
            self._logger.info(f"Failed {drained_count} pending executions ({type(error).__name__})")

    async def _execution_loop(self):
        """
        Serial execution loop. Processes one cell at a time from the queue.
        """
        self._logger.info(f"Execution loop started for kernel {self.kernel_id[:8]}")

        while True:
            try:
                if self.execution_queue.empty() and self.status == KernelStatus.BUSY:
                    self._set_status(KernelStatus.IDLE)

                req = await self.execution_queue.get()

                if req.abandoned:
                    self._logger.debug(f"Skipping abandoned execution {req.msg_id[:8]}")
                    self._complete_request(req)
                    continue
                if self.is_dead:
                    self._fail_request(req, KernelDiedError(self._dead_reason or "Kernel is dead"))
                    continue
                if self._restarting:
                    self._fail_request(req, KernelRestartedError("Kernel was restarted before the execution started"))
                    continue

                self.current_execution = req
                self._set_status(KernelStatus.BUSY)
                try:
                    content = {
                        "code": req.code,
                        "silent": req.silent,
                        "store_history": not req.silent,
                        "user_expressions": {},
                        "allow_stdin": False,
                        "stop_on_error": False,
                    }
                    req.kernel_msg_id = await self.channels.send("shell", "execute_request", content)
                    self.msg_id_map[req.kernel_msg_id] = req
                    self._logger.debug(
                        f"Executing cell {req.msg_id[:8]} (kernel msg_id: {req.kernel_msg_id[:8]}), "
                        f"queue depth: {self.execution_queue.qsize()}"
                    )

                    # Resolved by _route when the kernel is done with the request
                    await asyncio.shield(req.done)
                    self._logger.debug(f"Cell {req.msg_id[:8]} completed")
                except asyncio.CancelledError:
                    self._fail_request(req, self._stopped_error())
                    raise
                except Exception as e:
                    self._logger.error(f"Execution loop error for {req.msg_id[:8]}: {e}")
                    self._fail_request(req, KernelDiedError(f"Could not send execute request: {e}"))
                finally:
                    self.current_execution = None

            except asyncio.CancelledError:
                self._logger.info("Execution loop cancelled")
                break

    def _stopped_error(self) -> KernelBridgeError:
        """The error for a request whose execution loop was stopped under it."""
        if self._restarting:
            return KernelRestartedError("Kernel was restarted before the execution finished")
        if self._disposed:
            return SessionDisposedError("Kernel session was disposed", {"session": self.id})
        return KernelDiedError(self._dead_reason or "Kernel is dead", {"session": self.id})

    # Kernel messages

    async def _listen_channels(self, channels: KernelChannels):
        """
        Route kernel messages to the request that caused them.
        Marks the session dead if the websocket closes unexpectedly.
        """
        self._logger.info(f"Started channel listener for kernel {channels.kernel_id[:8]}")
        try:
            async for message in channels.receive():
                try:
                    self._route(message)
                except Exception as e:
                    self._logger.error(f"Error routing {message.get('msg_type')} message: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(f"Channel listener for kernel {channels.kernel_id[:8]} failed: {e}")

        if channels is self.channels and not self._disposed and not self._restarting:
            self._mark_dead("Connection to the kernel was closed")

    def _route(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("msg_type") or message.get("header", {}).get("msg_type")
        channel = message.get("channel")
        content = message.get("content") or {}
        parent_id = (message.get("parent_header") or {}).get("msg_id")

        if msg_type == "kernel_info_reply":
            if self._kernel_info is not None and not self._kernel_info.done():
                self._kernel_info.set_result(content)
            return

        if msg_type == "status" and content.get("execution_state") in ("restarting", "dead"):
            self._on_kernel_lost(content["execution_state"])
            return

        request = self.msg_id_map.get(parent_id)
        if request is None:
            return

        if not request.abandoned:
            request.messages.put_nowait(message)

        if channel == "shell" and msg_type == "execute_reply":
            request.reply_seen = True
            count = content.get("execution_count")
            if count is not None and not request.silent:
                self.execution_count = count
        elif channel == "iopub" and msg_type == "status" and content.get("execution_state") == "idle":
            request.idle_seen = True

        if request.reply_seen and request.idle_seen:
            self._complete_request(request)

    def _on_kernel_lost(self, state: str) -> None:
        if self._restarting or self._disposed:
            return
        if state == "dead":
            self._mark_dead("Kernel died and the server could not restart it")
            return
        self._logger.warning(f"Kernel {self.kernel_id[:8]} died; the server is restarting it")
        self._drain_queue(KernelDiedError("Kernel died and was restarted by the server"))
        self.execution_count = 0
        self._init_task = asyncio.ensure_future(self._run_initialization())
        self._init_task.add_done_callback(self._log_task_failure)

    def _on_process_exit(self, exit_code: int) -> None:
        if not self._disposed:
            self._mark_dead(f"Notebook server exited with code {exit_code}")

    def _mark_dead(self, reason: str) -> None:
        if self.is_dead:
            return
        self._logger.warning(f"Kernel session died: {reason}")
        self._dead_reason = reason
        self._set_status(KernelStatus.DEAD)
        self._drain_queue(KernelDiedError(reason, {"session": self.id}))
        if self._kernel_info is not None and not self._kernel_info.done():
            self._kernel_info.set_result(None)
        self._fire_terminated()
        self._begin_dispose()

    def _fire_terminated(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        callbacks, self._terminated_callbacks = self._terminated_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                self._logger.error(f"Terminated callback failed: {e}")

    # Control

    async def wait_for_idle(self, timeout_ms: Optional[float]) -> None:
        """
        Wait until no execution is running or queued.

        Raises:
            KernelPromiseTimeoutError: If the session is still busy at the deadline
            KernelDiedError: If the kernel is or becomes dead
        """
        await self._interceptors.invoke("wait_for_idle", lambda: self._wait_for_idle(timeout_ms))

    async def _wait_for_idle(self, timeout_ms: Optional[float]) -> None:
        self._ensure_usable()
        await with_deadline(
            self._settled.wait(),
            timeout_ms,
            lambda: KernelPromiseTimeoutError(
                f"Kernel did not become idle within {timeout_ms}ms", timeout_ms=timeout_ms
            ),
        )
        if self.is_dead:
            raise KernelDiedError(self._dead_reason or "Kernel died while waiting for idle")

    async def interrupt_kernel(self, timeout_ms: Optional[float]) -> InterruptResult:
        """
        Interrupt the running execution.

        Returns:
            InterruptResult: success if the kernel went idle within timeout_ms,
                restarted if it had to be restarted, timed_out if the restart
                did not complete either
        """
        return await self._interceptors.invoke("interrupt_kernel", lambda: self._interrupt(timeout_ms))

    async def _interrupt(self, timeout_ms: Optional[float]) -> InterruptResult:
        self._ensure_usable()
        current = self.current_execution
        if current is None:
            self._logger.info("Interrupt requested with nothing running")
            return InterruptResult.SUCCESS

        self._logger.info(f"Interrupting kernel {self.kernel_id[:8]}")

        async def interrupted():
            await self.client.interrupt_kernel(self.kernel_id)
            await asyncio.shield(current.done)

        try:
            await with_deadline(
                interrupted(),
                timeout_ms,
                lambda: KernelPromiseTimeoutError(
                    f"Kernel did not respond to interrupt within {timeout_ms}ms", timeout_ms=timeout_ms
                ),
            )
            self._ensure_usable()
            self._logger.info(f"Kernel {self.kernel_id[:8]} interrupted")
            return InterruptResult.SUCCESS
        except KernelPromiseTimeoutError as e:
            self._logger.warning(f"{e.message}; restarting it")

        restart_timeout = max(timeout_ms or 0, self.config.kernel_ready_timeout_ms)
        try:
            await self._restart(restart_timeout)
        except KernelPromiseTimeoutError:
            return InterruptResult.TIMED_OUT
        return InterruptResult.RESTARTED

    async def restart_kernel(self, timeout_ms: Optional[float]) -> None:
        """
        Restart the kernel in place, keeping the session identity.

        Pending executions end as error cells. Initialization cells run again.

        Raises:
            KernelPromiseTimeoutError: If the restart does not complete in time;
                the session is then dead
        """
        await self._interceptors.invoke("restart_kernel", lambda: self._restart(timeout_ms))

    async def _restart(self, timeout_ms: Optional[float]) -> None:
        self._ensure_usable()
        self._logger.info(f"Restarting kernel {self.kernel_id[:8]}")
        self._restarting = True
        self._set_status(KernelStatus.STARTING)
        self._drain_queue(KernelRestartedError("Kernel was restarted before the execution finished"))
        try:
            await with_deadline(
                self._restart_in_place(),
                timeout_ms,
                lambda: KernelPromiseTimeoutError(
                    f"Kernel restart did not complete within {timeout_ms}ms", timeout_ms=timeout_ms
                ),
            )
        except Exception as e:
            self._logger.error(f"Error restarting kernel {self.kernel_id[:8]}: {e}")
            self._restarting = False
            self._mark_dead(f"Kernel restart failed: {e}")
            raise
        finally:
            self._restarting = False
        self._logger.info(f"Kernel {self.kernel_id[:8]} restarted successfully")

    async def _restart_in_place(self) -> None:
        await self._stop_tasks()
        await self.client.restart_kernel(self.kernel_id)
        await self._open_channels()
        await self._wait_for_kernel_info()
        # Anything submitted while the restart was in progress predates the new kernel
        self._drain_queue(KernelRestartedError("Kernel was restarted before the execution finished"))
        self.execution_count = 0
        self._restarting = False
        self.executor_task = asyncio.create_task(self._execution_loop())
        self._set_status(KernelStatus.IDLE)
        await self._run_initialization()

    async def _stop_tasks(self) -> None:
        for name in ("listener_task", "executor_task", "_init_task"):
            task = getattr(self, name)
            if task is not None and not task.done():
                task.cancel()
                try:
                    await asyncio.wait_for(task, timeout=1.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
                except Exception as e:
                    self._logger.warning(f"{name} had an error on cleanup: {e}")
            setattr(self, name, None)

        if self.channels is not None:
            channels, self.channels = self.channels, None
            await channels.close()

    async def dispose(self) -> None:
        """
        Shut down the kernel and release every resource. Idempotent.
        """
        await asyncio.shield(self._begin_dispose())

    def _begin_dispose(self) -> asyncio.Task:
        if self._dispose_task is None:
            self._disposed = True
            self._dispose_task = asyncio.ensure_future(self._interceptors.invoke("dispose", self._dispose))
            self._dispose_task.add_done_callback(self._log_task_failure)
        return self._dispose_task

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(f"Background task failed: {task.exception()!r}")

    async def _dispose(self) -> None:
        self._logger.info("Disposing kernel session")
        self._drain_queue(SessionDisposedError("Kernel session was disposed", {"session": self.id}))
        if self.process is not None:
            self.process.remove_exit_callback(self._on_process_exit)

        # 1. Shut down the kernel while the server is still reachable.
        server_alive = self.process is None or not self.process.exited
        if self.kernel_id and self.client is not None and not self.client.closed and server_alive:
            timeout = self.config.shutdown_timeout_ms / 1000.0
            try:
                await asyncio.wait_for(self.client.shutdown_kernel(self.kernel_id), timeout=timeout)
                self._logger.info(f"Kernel {self.kernel_id[:8]} shut down")
            except asyncio.TimeoutError:
                self._logger.warning(f"Timeout shutting down kernel {self.kernel_id[:8]}. It may be orphaned.")
            except Exception as e:
                self._logger.warning(f"Error during kernel shutdown for {self.kernel_id[:8]}: {e}")

        # 2. Stop the listener and execution loop, close the websocket.
        await self._stop_tasks()

        # 3. Close the HTTP session and stop the server we own.
        if self.client is not None:
            await self.client.close()
        if self.process is not None:
            await self.process.terminate(timeout=self.config.shutdown_timeout_ms / 1000.0)

        for cleanup in self._cleanup:
            try:
                cleanup()
            except Exception as e:
                self._logger.warning(f"Cleanup after dispose failed: {e}")
        self._cleanup.clear()

        self._set_status(KernelStatus.DEAD)
        self._fire_terminated()
