"""Value types shared by the infoview update pipeline."""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse


class InfoStatus(str, Enum):
    LOADING = "loading"
    UPDATING = "updating"
    ERROR = "error"
    READY = "ready"


class InfoKind(str, Enum):
    CURSOR = "cursor"
    PIN = "pin"


@dataclass(frozen=True)
class Position:
    """A document position, 0-indexed line and character (LSP convention)."""
    uri: str
    line: int
    character: int

    @classmethod
    def from_path(cls, path: Path, line: int, col: int) -> "Position":
        """Build from a file path and 1-indexed line/col (editor convention)."""
        if line < 1 or col < 1:
            raise ValueError(f"line and col are 1-indexed (got {line}:{col})")
        return cls(Path(path).resolve().as_uri(), line - 1, col - 1)

    @property
    def path(self) -> Path:
        return Path(unquote(urlparse(self.uri).path))

    def to_lsp(self) -> dict:
        return {"line": self.line, "character": self.character}

    def text_document_position(self) -> dict:
        return {"textDocument": {"uri": self.uri}, "position": self.to_lsp()}

    def __str__(self) -> str:
        name = self.uri.rstrip("/").rsplit("/", 1)[-1]
        return f"{unquote(name)}:{self.line + 1}:{self.character}"


@dataclass(frozen=True)
class Hypothesis:
    names: tuple[str, ...]
    type: str
    val: str | None = None  # body of a let-bound hypothesis


@dataclass(frozen=True)
class Goal:
    type: str
    hyps: tuple[Hypothesis, ...] = ()
    user_name: str | None = None
    goal_prefix: str = "⊢ "


@dataclass(frozen=True)
class Widget:
    id: str
    javascript_hash: str | None = None
    props: dict = field(default_factory=dict, hash=False, compare=False)
    range: dict | None = field(default=None, hash=False, compare=False)


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch cycle. Committed wholesale, never field by field."""
    status: InfoStatus
    goals: tuple[Goal, ...] | None = None
    term_goal: Goal | None = None
    widgets: tuple[Widget, ...] | None = None
    error: str | None = None


@dataclass(frozen=True)
class DisplayState:
    """What a renderer sees: one committed result and the position it belongs to."""
    kind: InfoKind
    position: Position
    result: FetchResult = FetchResult(InfoStatus.LOADING)
    paused: bool = False

    @property
    def status(self) -> InfoStatus:
        return self.result.status

    def with_status(self, status: InfoStatus) -> "DisplayState":
        return replace(self, result=replace(self.result, status=status))
