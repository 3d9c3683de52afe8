"""
Value types shared by the launcher, session, cache and execution pipeline.
"""
import copy
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse


class KernelStatus(str, enum.Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


class CellState(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    FINISHED = "finished"
    ERROR = "error"


class CellType(str, enum.Enum):
    CODE = "code"
    MARKDOWN = "markdown"
    ERROR = "error"


class InterruptResult(str, enum.Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    RESTARTED = "restarted"


@dataclass(frozen=True)
class LaunchOptions:
    """
    Options for a connect request.

    Only use_default_config, uri and purpose decide whether two requests may
    share a session; the dark theme flag and working directory do not.
    """

    working_dir: Optional[str] = None
    use_default_config: bool = True
    uri: Optional[str] = None
    using_dark_theme: bool = False
    purpose: str = ""

    def fingerprint(self) -> Tuple[bool, Optional[str], str]:
        return (self.use_default_config, self.uri, self.purpose)


@dataclass(frozen=True)
class Connection:
    """A reachable notebook server endpoint."""

    base_url: str
    token: str = ""
    allow_unauthorized: bool = False
    local_launch: bool = False

    def __post_init__(self):
        if not self.base_url.endswith("/"):
            object.__setattr__(self, "base_url", self.base_url + "/")

    @property
    def hostname(self) -> str:
        return urlparse(self.base_url).hostname or ""

    @property
    def ws_url(self) -> str:
        parsed = urlparse(self.base_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return parsed._replace(scheme=scheme).geturl()

    @property
    def display_name(self) -> str:
        # Never log the token
        return self.base_url

    def api_url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))


@dataclass(frozen=True)
class KernelSpecInfo:
    name: str
    display_name: str = ""
    language: str = ""


@dataclass
class CellOutput:
    """One output of a cell, shaped after the nbformat output types."""

    output_type: str
    name: Optional[str] = None
    text: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_count: Optional[int] = None
    ename: Optional[str] = None
    evalue: Optional[str] = None
    traceback: List[str] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.output_type == "stream":
            return {"output_type": "stream", "name": self.name, "text": self.text or ""}
        if self.output_type == "error":
            return {
                "output_type": "error",
                "ename": self.ename,
                "evalue": self.evalue,
                "traceback": list(self.traceback),
            }
        result = {"output_type": self.output_type, "data": dict(self.data), "metadata": dict(self.metadata)}
        if self.output_type == "execute_result":
            result["execution_count"] = self.execution_count
        return result


@dataclass
class Cell:
    """
    A unit of submitted code and its accumulated, ordered output.

    The execution pipeline owns the live instance; consumers receive snapshots.
    """

    source: str
    file: str = ""
    line: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cell_type: CellType = CellType.CODE
    state: CellState = CellState.PENDING
    outputs: List[CellOutput] = field(default_factory=list)
    execution_count: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (CellState.FINISHED, CellState.ERROR)

    def snapshot(self) -> "Cell":
        return copy.deepcopy(self)

    def text_output(self) -> str:
        """Concatenated stream text of the cell, mostly useful for diagnostics."""
        return "".join(o.text or "" for o in self.outputs if o.output_type == "stream")

    def to_dict(self) -> Dict[str, Any]:
        if self.cell_type == CellType.MARKDOWN:
            return {"cell_type": "markdown", "id": self.id, "source": self.source, "metadata": {}}
        return {
            "cell_type": "code",
            "id": self.id,
            "source": self.source,
            "metadata": {},
            "execution_count": self.execution_count,
            "outputs": [o.to_dict() for o in self.outputs],
        }
