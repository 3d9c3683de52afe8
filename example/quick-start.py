"""
Run a percent-format notebook script through kernelbridge, cell by cell.

    python example/quick-start.py path/to/script.py

Without an argument a small built-in script is used. Requires the notebook
extra (pip install kernelbridge[notebook]).
"""
import asyncio
import logging
import os
import re
import sys

from kernelbridge import CellState, LaunchOptions, ServerCache, configure_logging, load_config

DEMO = """#%%
name = "kernelbridge"
print(f"Hello from {name}!")

# %% [markdown]
# This cell is markdown and never reaches the kernel.

#%%
numbers = [1, 2, 3, 4, 5]
sum(numbers)

#%%
10 / 0
"""

CELL_MARKER = re.compile(r"^\s*#\s*%%", re.MULTILINE)


def split_cells(source):
    starts = [m.start() for m in CELL_MARKER.finditer(source)] or [0]
    ends = starts[1:] + [len(source)]
    return [(source.count("\n", 0, start) + 1, source[start:end].strip()) for start, end in zip(starts, ends)]


def describe(cell):
    lines = [f"[{cell.execution_count or ' '}] {cell.cell_type.value} cell, {cell.state.value}"]
    for output in cell.outputs:
        if output.output_type == "stream":
            lines.append(output.text.rstrip("\n"))
        elif output.output_type == "error":
            lines.append(f"{output.ename}: {output.evalue}")
        else:
            lines.append(output.data.get("text/plain", f"<{', '.join(output.data)}>"))
    return "\n".join(lines)


async def main(path):
    source = open(path).read() if path else DEMO
    cache = ServerCache(config=load_config({"kernel_ready_timeout_ms": 60000}))
    try:
        session = await cache.connect(LaunchOptions(working_dir=os.path.dirname(os.path.abspath(path or "."))))
        print(f"Connected: {session.info()}")
        for line, code in split_cells(source):
            async for cell in session.execute(code, file=path or "<demo>", line=line):
                if cell.state in (CellState.FINISHED, CellState.ERROR):
                    print(describe(cell))
                    print()
    finally:
        await cache.dispose()


if __name__ == "__main__":
    configure_logging(level=logging.WARNING)
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
