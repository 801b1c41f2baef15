"""Parse server goal payloads into Goal values and render display states as text."""

import re
from typing import Iterable, Optional

from .info_types import DisplayState, Goal, Hypothesis, InfoKind, InfoStatus, Widget

_SEVERITY = {1: "error", 2: "warning", 3: "information", 4: "hint"}

# "x y : Nat" -> names and type; names never contain " : "
_HYP_RE = re.compile(r'^(?P<names>[^:]+?) : (?P<type>.*)$', re.DOTALL)


def strip_tags(tt) -> str:
    """Flatten Lean's TaggedText ({text}, {append: [...]}, {tag: [info, child]})."""
    if tt is None:
        return ""
    if isinstance(tt, str):
        return tt
    parts = []
    stack = [tt]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            parts.append(node)
        elif "text" in node:
            parts.append(node["text"])
        elif "append" in node:
            stack.extend(reversed(node["append"]))
        elif "tag" in node:
            stack.append(node["tag"][1])
        else:
            raise ValueError(f"Unrecognized tagged text node: {node!r}")
    return "".join(parts)


def _hyp_names(raw: list) -> tuple[str, ...]:
    names = []
    for n in raw:
        # Some server versions send [name, fvarId] pairs
        name = n[0] if isinstance(n, list) else n
        names.append(name)
    return tuple(names)


def goal_from_interactive(payload: dict) -> Goal:
    """Convert an InteractiveGoal / InteractiveTermGoal JSON object."""
    hyps = tuple(
        Hypothesis(
            names=_hyp_names(h.get("names", [])),
            type=strip_tags(h.get("type")),
            val=strip_tags(h["val"]) if h.get("val") is not None else None,
        )
        for h in payload.get("hyps", [])
    )
    return Goal(
        type=strip_tags(payload.get("type")),
        hyps=hyps,
        user_name=payload.get("userName"),
        goal_prefix=payload.get("goalPrefix") or "⊢ ",
    )


def goals_from_interactive(payload: Optional[dict]) -> tuple[Goal, ...] | None:
    if payload is None:
        return None
    return tuple(goal_from_interactive(g) for g in payload.get("goals", []))


def goal_from_plain(text: str) -> Goal:
    """Parse one pretty-printed goal as sent by $/lean/plainGoal.

    Layout: optional "case <name>" line, hypotheses "a b : T" (continuation
    lines indented), then "⊢ <type>" possibly spanning several lines.
    """
    lines = text.split('\n')
    user_name = None
    if lines and lines[0].startswith("case "):
        user_name = lines[0][len("case "):].strip()
        lines = lines[1:]

    hyp_chunks: list[str] = []
    target: list[str] | None = None
    for line in lines:
        if target is not None:
            target.append(line)
        elif line.startswith("⊢"):
            target = [line[1:].lstrip()]
        elif hyp_chunks and line[:1].isspace():
            hyp_chunks[-1] += "\n" + line
        elif line.strip():
            hyp_chunks.append(line)

    hyps = []
    for chunk in hyp_chunks:
        m = _HYP_RE.match(chunk)
        if not m:
            raise ValueError(f"Malformed hypothesis in plain goal: {chunk!r}")
        hyp_type, _, val = m.group("type").partition(" := ")
        hyps.append(Hypothesis(
            names=tuple(m.group("names").split()),
            type=hyp_type,
            val=val or None,
        ))

    if target is None:
        # Not a goal layout we know; keep the whole text as the target
        return Goal(type=text.strip(), user_name=user_name)
    return Goal(type="\n".join(target).rstrip(), hyps=tuple(hyps), user_name=user_name)


def goals_from_plain(payload: Optional[dict]) -> tuple[Goal, ...] | None:
    """Convert a PlainGoal response ({rendered, goals: [str]})."""
    if payload is None:
        return None
    return tuple(goal_from_plain(g) for g in payload.get("goals", []))


def term_goal_from_plain(payload: Optional[dict]) -> Goal | None:
    """Convert a PlainTermGoal response ({goal: str, range})."""
    if payload is None:
        return None
    return goal_from_plain(payload["goal"])


def widgets_from_response(payload: Optional[dict]) -> tuple[Widget, ...] | None:
    if payload is None:
        return None
    return tuple(
        Widget(
            id=w.get("id") or w.get("widgetSourceId") or "",
            javascript_hash=w.get("javascriptHash"),
            props=w.get("props") or {},
            range=w.get("range"),
        )
        for w in payload.get("widgets", [])
    )


def goal_to_string(goal: Goal) -> str:
    lines = []
    if goal.user_name:
        lines.append(f"case {goal.user_name}")
    for h in goal.hyps:
        names = " ".join(n for n in h.names if "[anonymous]" not in n)
        line = f"{names} : {h.type}"
        if h.val is not None:
            line += f" := {h.val}"
        lines.append(line)
    lines.append(f"{goal.goal_prefix}{goal.type}")
    return "\n".join(lines)


def goals_to_string(goals: Iterable[Goal]) -> str:
    return "\n\n".join(goal_to_string(g) for g in goals)


def comment_block(text: str) -> str:
    return f"/-\n{text}\n-/\n"


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line if line else line for line in text.split('\n'))


def format_diagnostic(diag: dict) -> str:
    start = (diag.get("fullRange") or diag["range"])["start"]
    severity = _SEVERITY.get(diag.get("severity", 1), "error")
    return f"{start['line'] + 1}:{start['character']} {severity}: {diag.get('message', '')}"


def status_line(state: DisplayState) -> str:
    """Location line with pin/pause markers, as in the infoview's summary bar."""
    pinned = state.kind == InfoKind.PIN
    marker = ""
    if pinned and not state.paused:
        marker = " (pinned)"
    elif not pinned and state.paused:
        marker = " (paused)"
    elif pinned and state.paused:
        marker = " (pinned and paused)"
    return f"{state.position}{marker} [{state.status.value}]"


def render_display(state: DisplayState, messages: list[dict] | None = None) -> str:
    """Plain-text rendering of one slot."""
    messages = messages or []
    result = state.result
    is_error = state.status == InfoStatus.ERROR
    widgets = result.widgets or ()

    lines = [status_line(state)]

    if is_error and result.error:
        lines.append(f"Error updating: {result.error}. Try again with info_refresh.")

    if not is_error and result.goals is not None:
        lines.append("")
        lines.append("=== Tactic state ===")
        if result.goals:
            for i, g in enumerate(result.goals):
                if i > 0:
                    lines.append("")
                lines.append(_indent(goal_to_string(g)))
        else:
            lines.append("  No goals")

    if not is_error and result.term_goal is not None:
        lines.append("")
        lines.append("=== Expected type ===")
        lines.append(_indent(goal_to_string(result.term_goal)))

    for w in widgets:
        lines.append("")
        lines.append(f"=== Widget: {w.id} ===")

    if not is_error and messages:
        lines.append("")
        lines.append(f"=== Messages ({len(messages)}) ===")
        for diag in messages:
            lines.append(_indent(format_diagnostic(diag)))

    nothing_to_show = (
        not result.error and result.goals is None and result.term_goal is None
        and not messages and not widgets
    )
    if nothing_to_show:
        lines.append("")
        if state.paused:
            lines.append("Updating is paused. Refresh or resume updating to see information.")
        else:
            lines.append("No info found.")

    return "\n".join(lines)
