"""
Unit tests for cell assembly and the execution pipeline.
"""
import pytest

from kernelbridge.core.config import BridgeConfig
from kernelbridge.exceptions import KernelDiedError, OperationCanceledError
from kernelbridge.execution import ExecutionPipeline, _CellAssembler, split_markdown, trim_text_output
from kernelbridge.models import Cell, CellState, CellType


def msg(msg_type, **content):
    return {"header": {"msg_type": msg_type}, "content": content}


class FakeSession:
    """Stands in for KernelSession: replays canned messages for every submission."""

    def __init__(self, messages=(), error=None):
        self.messages = list(messages)
        self.error = error
        self.submitted = []
        self.abandoned = []

    def submit(self, code, silent=False):
        request = f"request-{len(self.submitted)}"
        self.submitted.append((code, silent))
        return request

    async def stream_messages(self, request, cancel_token=None):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error

    def abandon(self, request):
        self.abandoned.append(request)


class RecordingLogger:
    def __init__(self):
        self.events = []

    async def pre_execute(self, cell, silent):
        self.events.append(("pre", cell.state, silent))

    async def post_execute(self, cell, silent):
        self.events.append(("post", cell.state, silent))


async def collect(iterator):
    return [snapshot async for snapshot in iterator]


class TestTrimTextOutput:
    def test_keeps_trailing_whole_lines(self):
        assert trim_text_output("hello\nworld\nhow\nare\nyou\n", 7) == ("are\nyou", True)

    def test_single_long_line_keeps_its_tail(self):
        assert trim_text_output("abcdefghij", 4) == ("ghij", True)

    def test_text_within_limit_is_untouched(self):
        assert trim_text_output("short\n", 100) == ("short\n", False)

    def test_zero_limit_disables_trimming(self):
        text = "x" * 1000

        assert trim_text_output(text, 0) == (text, False)


class TestSplitMarkdown:
    def test_drops_marker_and_comment_characters(self):
        source = "# %% [markdown]\n# # Title\n#   indented\nplain"

        assert split_markdown(source) == "# Title\n  indented\nplain"


class TestCellAssembler:
    def setup_method(self):
        self.cell = Cell(source="code")
        self.assembler = _CellAssembler(self.cell, text_output_limit=0)

    def test_busy_status_moves_pending_to_executing(self):
        assert self.assembler.apply(msg("status", execution_state="busy"))
        assert self.cell.state == CellState.EXECUTING
        assert not self.assembler.apply(msg("status", execution_state="busy"))

    def test_unknown_message_types_are_ignored(self):
        assert not self.assembler.apply(msg("comm_open", comm_id="c"))
        assert self.cell.outputs == []

    def test_stream_chunks_coalesce_per_name(self):
        self.assembler.apply(msg("stream", name="stdout", text="a\n"))
        self.assembler.apply(msg("stream", name="stdout", text="b\n"))
        self.assembler.apply(msg("stream", name="stderr", text="warn\n"))

        assert [(o.name, o.text) for o in self.cell.outputs] == [("stdout", "a\nb\n"), ("stderr", "warn\n")]

    def test_stream_is_trimmed_while_accumulating(self):
        assembler = _CellAssembler(self.cell, text_output_limit=7)

        assembler.apply(msg("stream", name="stdout", text="hello\nworld\n"))
        assert self.cell.outputs[0].text == "world"
        assert self.cell.outputs[0].truncated

        assembler.apply(msg("stream", name="stdout", text="x\n"))
        assert self.cell.outputs[0].text == "world\nx"

    def test_clear_output_with_wait_defers_until_next_output(self):
        self.assembler.apply(msg("stream", name="stdout", text="old\n"))

        assert not self.assembler.apply(msg("clear_output", wait=True))
        assert len(self.cell.outputs) == 1

        self.assembler.apply(msg("stream", name="stdout", text="new\n"))
        assert [o.text for o in self.cell.outputs] == ["new\n"]

    def test_clear_output_without_wait_is_immediate(self):
        self.assembler.apply(msg("stream", name="stdout", text="old\n"))

        assert self.assembler.apply(msg("clear_output", wait=False))
        assert self.cell.outputs == []

    def test_update_display_data_replaces_matching_output(self):
        self.assembler.apply(
            msg("display_data", data={"text/plain": "0%"}, metadata={}, transient={"display_id": "progress"})
        )

        assert self.assembler.apply(
            msg("update_display_data", data={"text/plain": "100%"}, metadata={}, transient={"display_id": "progress"})
        )
        assert self.cell.outputs[0].data == {"text/plain": "100%"}
        assert not self.assembler.apply(
            msg("update_display_data", data={"text/plain": "?"}, metadata={}, transient={"display_id": "other"})
        )

    def test_execute_result_sets_count(self):
        self.assembler.apply(msg("execute_result", data={"text/plain": "1"}, metadata={}, execution_count=4))

        assert self.cell.execution_count == 4
        assert self.cell.outputs[0].output_type == "execute_result"

    def test_error_reply_without_error_output_adds_one(self):
        self.assembler.apply(
            msg("execute_reply", status="error", ename="NameError", evalue="x", traceback=["tb"], execution_count=2)
        )
        self.assembler.finish()

        assert self.cell.state == CellState.ERROR
        assert [o.ename for o in self.cell.outputs] == ["NameError"]

    def test_error_message_is_not_terminal_until_finish(self):
        self.assembler.apply(msg("status", execution_state="busy"))
        self.assembler.apply(msg("error", ename="NameError", evalue="name 'a' is not defined", traceback=[]))

        assert self.cell.state == CellState.EXECUTING
        assert not self.cell.is_terminal

        self.assembler.finish()
        assert self.cell.state == CellState.ERROR

    def test_error_after_error_message_is_not_duplicated(self):
        self.assembler.apply(msg("error", ename="ZeroDivisionError", evalue="division by zero", traceback=[]))
        self.assembler.apply(msg("execute_reply", status="error", ename="ZeroDivisionError", evalue="", traceback=[]))

        assert len(self.cell.outputs) == 1

    def test_aborted_reply_is_an_error(self):
        self.assembler.apply(msg("execute_reply", status="aborted"))
        self.assembler.finish()

        assert self.cell.state == CellState.ERROR
        assert self.cell.outputs[-1].ename == "ExecutionAborted"

    def test_fail_records_error_type(self):
        self.assembler.fail(KernelDiedError("kernel died"))

        assert self.cell.state == CellState.ERROR
        assert self.cell.outputs[-1].ename == "KernelDiedError"
        assert self.cell.outputs[-1].evalue == "kernel died"


class TestExecutionPipeline:
    @pytest.mark.asyncio
    async def test_snapshots_end_with_single_terminal_cell(self):
        session = FakeSession(
            [
                msg("status", execution_state="busy"),
                msg("execute_input", code="a", execution_count=1),
                msg("execute_result", data={"text/plain": "1"}, metadata={}, execution_count=1),
                msg("execute_reply", status="ok", execution_count=1),
            ]
        )
        pipeline = ExecutionPipeline(session, BridgeConfig())

        snapshots = await collect(pipeline.run("a", file="nb.py", line=3, cell_id="cell-1"))

        assert snapshots[0].state == CellState.PENDING
        assert [s.is_terminal for s in snapshots].count(True) == 1
        assert snapshots[-1].state == CellState.FINISHED
        assert snapshots[-1].outputs[0].data == {"text/plain": "1"}
        assert all(s.id == "cell-1" for s in snapshots)
        assert snapshots[-1].file == "nb.py" and snapshots[-1].line == 3
        assert session.abandoned == []

    @pytest.mark.asyncio
    async def test_failing_cell_has_single_terminal_snapshot(self):
        session = FakeSession(
            [
                msg("status", execution_state="busy"),
                msg("execute_input", code="a", execution_count=1),
                msg("error", ename="NameError", evalue="name 'a' is not defined", traceback=["tb"]),
                msg("execute_reply", status="error", ename="NameError", evalue="", traceback=[], execution_count=1),
                msg("status", execution_state="idle"),
            ]
        )
        recorder = RecordingLogger()
        pipeline = ExecutionPipeline(session, BridgeConfig(), loggers=[recorder])

        snapshots = await collect(pipeline.run("a"))

        assert [s.is_terminal for s in snapshots].count(True) == 1
        assert snapshots[-1].state == CellState.ERROR
        assert [o.ename for o in snapshots[-1].outputs] == ["NameError"]
        assert recorder.events[-1] == ("post", CellState.ERROR, False)

    @pytest.mark.asyncio
    async def test_markdown_is_not_sent_to_kernel(self):
        session = FakeSession()
        pipeline = ExecutionPipeline(session, BridgeConfig())

        snapshots = await collect(pipeline.run("# %% [markdown]\n# Heading"))

        assert session.submitted == []
        assert len(snapshots) == 1
        assert snapshots[0].cell_type == CellType.MARKDOWN
        assert snapshots[0].source == "Heading"
        assert snapshots[0].state == CellState.FINISHED

    @pytest.mark.asyncio
    async def test_custom_markdown_pattern(self):
        session = FakeSession([msg("execute_reply", status="ok")])
        pipeline = ExecutionPipeline(session, BridgeConfig(markdown_regex=r"^## md"))

        await collect(pipeline.run("# %% [markdown]\nx = 1"))

        assert session.submitted == [("# %% [markdown]\nx = 1", False)]

    @pytest.mark.asyncio
    async def test_session_failure_becomes_error_cell(self):
        session = FakeSession([msg("status", execution_state="busy")], error=KernelDiedError("kernel died"))
        pipeline = ExecutionPipeline(session, BridgeConfig())

        snapshots = await collect(pipeline.run("while True: pass"))

        assert snapshots[-1].state == CellState.ERROR
        assert snapshots[-1].outputs[-1].ename == "KernelDiedError"

    @pytest.mark.asyncio
    async def test_cancellation_propagates_and_abandons_request(self):
        session = FakeSession([msg("status", execution_state="busy")], error=OperationCanceledError())
        pipeline = ExecutionPipeline(session, BridgeConfig())

        with pytest.raises(OperationCanceledError):
            await collect(pipeline.run("slow()"))

        assert session.abandoned == ["request-0"]

    @pytest.mark.asyncio
    async def test_loggers_see_pending_then_terminal_cell(self):
        session = FakeSession([msg("execute_reply", status="ok")])
        recorder = RecordingLogger()
        pipeline = ExecutionPipeline(session, BridgeConfig(), loggers=[recorder])

        await collect(pipeline.run("x", silent=True))

        assert recorder.events == [("pre", CellState.PENDING, True), ("post", CellState.FINISHED, True)]
        assert session.submitted == [("x", True)]

    @pytest.mark.asyncio
    async def test_failing_logger_does_not_break_execution(self):
        class Broken:
            async def pre_execute(self, cell, silent):
                raise RuntimeError("log store offline")

            async def post_execute(self, cell, silent):
                raise RuntimeError("log store offline")

        session = FakeSession([msg("execute_reply", status="ok")])
        pipeline = ExecutionPipeline(session, BridgeConfig(), loggers=[Broken()])

        snapshots = await collect(pipeline.run("x"))

        assert snapshots[-1].state == CellState.FINISHED
