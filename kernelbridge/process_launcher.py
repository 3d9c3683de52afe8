"""
Starts the notebook server process and exposes its output as a line stream.
"""
import asyncio
import logging
import os
import subprocess
from typing import AsyncIterator, Callable, List, Mapping, Optional, Sequence

from .exceptions import LaunchError

_EOF = object()


class ProcessHandle:
    """
    A running child process.

    stdout and stderr are pumped into one queue so callers can scan both as a
    single ordered line stream. The caller owns the process and must
    eventually call terminate().
    """

    def __init__(self, process: asyncio.subprocess.Process, args: Sequence[str]):
        self.process = process
        self.args = list(args)
        self._lines: asyncio.Queue = asyncio.Queue()
        self._exit_callbacks: List[Callable[[int], None]] = []
        self._buffering = True
        self._logger = logging.getLogger(f"kernelbridge.process.{process.pid}")
        self._pumps = [
            asyncio.create_task(self._pump(process.stdout, "stdout")),
            asyncio.create_task(self._pump(process.stderr, "stderr")),
        ]
        self._open_streams = len(self._pumps)
        self._waiter = asyncio.create_task(self._wait_for_exit())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def exited(self) -> bool:
        return self._waiter.done()

    async def _pump(self, stream: Optional[asyncio.StreamReader], name: str):
        if stream is None:
            await self._lines.put(_EOF)
            return
        try:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._logger.debug(f"[{name}] {line}")
                if self._buffering:
                    await self._lines.put(line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning(f"Error reading {name} of process {self.pid}: {e}")
        finally:
            self._lines.put_nowait(_EOF)

    async def _wait_for_exit(self) -> int:
        code = await self.process.wait()
        self._logger.info(f"Process {self.pid} exited with code {code}")
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(code)
            except Exception as e:
                self._logger.error(f"Exit callback failed for process {self.pid}: {e}")
        return code

    def add_exit_callback(self, callback: Callable[[int], None]) -> None:
        """Call callback(exit_code) when the process exits (immediately if it already has)."""
        if self._waiter.done():
            callback(self._waiter.result())
        else:
            self._exit_callbacks.append(callback)

    def remove_exit_callback(self, callback: Callable[[int], None]) -> None:
        try:
            self._exit_callbacks.remove(callback)
        except ValueError:
            pass

    def stop_buffering(self) -> None:
        """
        Stop queuing output lines for lines(). Output is still logged at debug level.

        Call once nothing reads lines() anymore; lines already queued are dropped.
        """
        self._buffering = False
        kept = []
        while not self._lines.empty():
            item = self._lines.get_nowait()
            if item is _EOF:
                kept.append(item)
        for item in kept:
            self._lines.put_nowait(item)

    async def lines(self) -> AsyncIterator[str]:
        """
        Yield output lines from stdout and stderr until both are closed.

        Lines are consumed: a second call continues where the first one stopped.
        """
        while self._open_streams:
            line = await self._lines.get()
            if line is _EOF:
                self._open_streams -= 1
                continue
            yield line

    async def wait(self) -> int:
        return await asyncio.shield(self._waiter)

    async def terminate(self, timeout: float = 2.0) -> None:
        """
        Terminate the process, escalating to kill after timeout seconds.
        """
        if self.process.returncode is None:
            self._logger.info(f"Terminating process {self.pid}")
            try:
                self.process.terminate()
                await asyncio.wait_for(self.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                self._logger.warning(f"Process {self.pid} did not exit after {timeout}s, killing it")
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.wait()

        for pump in self._pumps:
            if not pump.done():
                pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)


class ProcessLauncher:
    """Spawns processes; never retries."""

    def __init__(self):
        self._logger = logging.getLogger("kernelbridge.process_launcher")

    async def launch(
        self,
        executable: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> ProcessHandle:
        """
        Start executable with args.

        Args:
            executable: Path of the program to run
            args: Arguments passed after the executable
            env: Environment for the child; inherits os.environ when None
            cwd: Working directory for the child

        Returns:
            ProcessHandle: Handle over the running process

        Raises:
            LaunchError: If the executable could not be spawned
        """
        argv = [executable, *args]
        self._logger.info(f"Launching {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else dict(os.environ),
                cwd=cwd,
            )
        except (OSError, ValueError) as e:
            self._logger.error(f"Failed to launch {executable}: {e}")
            raise LaunchError(f"Could not start {executable}: {e}", {"executable": executable, "args": list(args)}) from e

        self._logger.info(f"Started process {process.pid}")
        return ProcessHandle(process, argv)
