"""
Turns one code submission into a stream of Cell snapshots.

The pipeline owns the live Cell; every kernel message that changes it
produces a deep-copied snapshot for the consumer. Exactly one snapshot is
terminal (finished or error), and it is always the last one.
"""
import logging
import re
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional, Protocol, Sequence, Tuple

from .core.cancellation import CancellationToken
from .core.config import BridgeConfig
from .exceptions import KernelBridgeError, OperationCanceledError
from .models import Cell, CellOutput, CellState, CellType

if TYPE_CHECKING:
    from .kernel_session import KernelSession

_MARKDOWN_COMMENT = re.compile(r"^\s*#\s?")


class ExecutionLogger(Protocol):
    """Observer notified around every executed Cell."""

    async def pre_execute(self, cell: Cell, silent: bool) -> None:
        ...

    async def post_execute(self, cell: Cell, silent: bool) -> None:
        ...


def trim_text_output(text: str, limit: int) -> Tuple[str, bool]:
    """
    Keep the trailing whole lines of text whose total length fits within limit.

    A single line longer than limit is cut to its last limit characters.
    A limit of zero or less disables trimming.

    Returns:
        tuple: (possibly trimmed text, whether anything was dropped)
    """
    if limit <= 0 or len(text) <= limit:
        return text, False

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    kept = []
    total = 0
    for line in reversed(lines):
        cost = len(line) + (1 if kept else 0)
        if total + cost > limit:
            break
        kept.append(line)
        total += cost

    if not kept:
        return text.rstrip("\n")[-limit:], True
    return "\n".join(reversed(kept)), True


def split_markdown(source: str) -> str:
    """Drop the marker line and the leading comment characters of a markdown cell."""
    lines = source.splitlines()[1:]
    return "\n".join(_MARKDOWN_COMMENT.sub("", line, count=1) for line in lines)


class ExecutionPipeline:
    """
    Executes one source at a time against a KernelSession and assembles its Cell.
    """

    def __init__(
        self,
        session: "KernelSession",
        config: BridgeConfig,
        loggers: Sequence[ExecutionLogger] = (),
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.config = config
        self.loggers = list(loggers)
        self._logger = logger or logging.getLogger("kernelbridge.execution")
        self._markdown = re.compile(config.markdown_regex)

    def is_markdown(self, source: str) -> bool:
        first_line = source.lstrip("\r\n").split("\n", 1)[0]
        return bool(self._markdown.match(first_line))

    async def _notify(self, hook: str, cell: Cell, silent: bool) -> None:
        for execution_logger in self.loggers:
            try:
                await getattr(execution_logger, hook)(cell.snapshot(), silent)
            except Exception as e:
                self._logger.warning(f"Execution logger {type(execution_logger).__name__}.{hook} failed: {e}")

    async def run(
        self,
        source: str,
        file: str = "",
        line: int = 0,
        cell_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        silent: bool = False,
    ) -> AsyncIterator[Cell]:
        """
        Execute source and yield snapshots of its Cell until it is terminal.

        Raises:
            KernelDiedError: If the session is already dead when the run starts
            SessionDisposedError: If the session was disposed
            OperationCanceledError: If cancel_token fires before the Cell is terminal
        """
        cell = Cell(source=source, file=file, line=line, id=cell_id or str(uuid.uuid4()))

        if self.is_markdown(source):
            cell.cell_type = CellType.MARKDOWN
            cell.source = split_markdown(source)
            cell.state = CellState.FINISHED
            await self._notify("pre_execute", cell, silent)
            yield cell.snapshot()
            await self._notify("post_execute", cell, silent)
            return

        request = self.session.submit(source, silent=silent)
        assembler = _CellAssembler(cell, self.config.text_output_limit)
        await self._notify("pre_execute", cell, silent)
        try:
            yield cell.snapshot()
            try:
                async for message in self.session.stream_messages(request, cancel_token):
                    if assembler.apply(message):
                        yield cell.snapshot()
            except OperationCanceledError:
                self._logger.info(f"Execution of cell {cell.id[:8]} canceled")
                raise
            except KernelBridgeError as e:
                self._logger.warning(f"Cell {cell.id[:8]} failed: {e}")
                assembler.fail(e)
            else:
                assembler.finish()
            yield cell.snapshot()
            await self._notify("post_execute", cell, silent)
        finally:
            if not cell.is_terminal:
                self.session.abandon(request)


class _CellAssembler:
    """Applies Jupyter iopub/shell messages to a Cell."""

    def __init__(self, cell: Cell, text_output_limit: int):
        self.cell = cell
        self.limit = text_output_limit
        self._clear_on_next_output = False
        # The kernel reported an error; the Cell ends in error once the run is over
        self.errored = False
        self._display_ids: Dict[str, CellOutput] = {}
        # Streams whose trimmed text dropped a trailing newline
        self._pending_newline: Dict[str, bool] = {}

    def apply(self, message: Dict[str, Any]) -> bool:
        msg_type = message.get("msg_type") or message.get("header", {}).get("msg_type")
        content = message.get("content") or {}
        handler = getattr(self, f"_on_{msg_type}", None)
        if handler is None:
            return False
        return handler(content)

    def _begin_output(self) -> None:
        if self._clear_on_next_output:
            self._clear_outputs()
            self._clear_on_next_output = False

    def _clear_outputs(self) -> None:
        self.cell.outputs.clear()
        self._display_ids.clear()
        self._pending_newline.clear()

    def _on_status(self, content: Dict[str, Any]) -> bool:
        if content.get("execution_state") == "busy" and self.cell.state == CellState.PENDING:
            self.cell.state = CellState.EXECUTING
            return True
        return False

    def _on_execute_input(self, content: Dict[str, Any]) -> bool:
        self.cell.execution_count = content.get("execution_count", self.cell.execution_count)
        if self.cell.state == CellState.PENDING:
            self.cell.state = CellState.EXECUTING
        return True

    def _on_stream(self, content: Dict[str, Any]) -> bool:
        self._begin_output()
        name = content.get("name", "stdout")
        text = content.get("text", "")
        outputs = self.cell.outputs
        if outputs and outputs[-1].output_type == "stream" and outputs[-1].name == name:
            output = outputs[-1]
            if self._pending_newline.pop(name, False):
                text = "\n" + text
            accumulated = (output.text or "") + text
        else:
            output = CellOutput(output_type="stream", name=name, text="")
            outputs.append(output)
            accumulated = text

        trimmed, truncated = trim_text_output(accumulated, self.limit)
        if truncated:
            self._pending_newline[name] = accumulated.endswith("\n")
            output.truncated = True
        output.text = trimmed
        return True

    def _on_display_data(self, content: Dict[str, Any]) -> bool:
        self._begin_output()
        output = CellOutput(
            output_type="display_data",
            data=dict(content.get("data") or {}),
            metadata=dict(content.get("metadata") or {}),
        )
        display_id = (content.get("transient") or {}).get("display_id")
        if display_id:
            self._display_ids[display_id] = output
        self.cell.outputs.append(output)
        return True

    def _on_update_display_data(self, content: Dict[str, Any]) -> bool:
        display_id = (content.get("transient") or {}).get("display_id")
        output = self._display_ids.get(display_id)
        if output is None:
            return False
        output.data = dict(content.get("data") or {})
        output.metadata = dict(content.get("metadata") or {})
        return True

    def _on_execute_result(self, content: Dict[str, Any]) -> bool:
        self._begin_output()
        count = content.get("execution_count")
        self.cell.outputs.append(
            CellOutput(
                output_type="execute_result",
                data=dict(content.get("data") or {}),
                metadata=dict(content.get("metadata") or {}),
                execution_count=count,
            )
        )
        if count is not None:
            self.cell.execution_count = count
        return True

    def _on_clear_output(self, content: Dict[str, Any]) -> bool:
        if content.get("wait"):
            self._clear_on_next_output = True
            return False
        self._clear_outputs()
        return True

    def _on_error(self, content: Dict[str, Any]) -> bool:
        self._begin_output()
        self.cell.outputs.append(
            CellOutput(
                output_type="error",
                ename=content.get("ename", "Error"),
                evalue=content.get("evalue", ""),
                traceback=list(content.get("traceback") or []),
            )
        )
        self.errored = True
        return True

    def _on_execute_reply(self, content: Dict[str, Any]) -> bool:
        changed = False
        count = content.get("execution_count")
        if count is not None and count != self.cell.execution_count:
            self.cell.execution_count = count
            changed = True
        status = content.get("status")
        if status == "error" and not self.errored:
            if not any(o.output_type == "error" for o in self.cell.outputs):
                self._on_error(content)
            self.errored = True
            changed = True
        elif status == "aborted":
            self.cell.outputs.append(
                CellOutput(output_type="error", ename="ExecutionAborted", evalue="Execution was aborted by the kernel")
            )
            self.errored = True
            changed = True
        return changed

    def fail(self, error: KernelBridgeError) -> None:
        self.cell.outputs.append(
            CellOutput(
                output_type="error",
                ename=type(error).__name__,
                evalue=error.message,
                traceback=[f"{type(error).__name__}: {error.message}"],
            )
        )
        self.errored = True
        self.cell.state = CellState.ERROR

    def finish(self) -> None:
        self.cell.state = CellState.ERROR if self.errored else CellState.FINISHED
