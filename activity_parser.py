"""
Agent Activity Parser
=====================

Turns raw agent CLI output lines into short progress labels
("📖 Reading: .../src/app.py") that the UI can show while the agent works.

Classification is table driven: ``ACTIVITY_RULES`` is checked in order and
the first rule that renders a label wins.  ``parse_activity`` is pure;
``ActivityStream`` adds the per-run state (duplicate suppression, line
counting, heartbeats) and produces the ``AgentEvent`` sequence observers see.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

# Progress heartbeat interval, in raw lines
HEARTBEAT_INTERVAL = 50

MAX_COMMAND_LABEL_LENGTH = 50

# Event kinds delivered to observers
EVENT_STATUS = "status"
EVENT_ACTIVITY = "activity"
EVENT_LINE = "line"
EVENT_HEARTBEAT = "heartbeat"

TOOL_LABELS = {
    "read": "📖 Reading file...",
    "write": "✏️ Writing file...",
    "bash": "🔧 Running command...",
    "glob": "🔍 Searching for files...",
    "grep": "🔍 Searching in files...",
    "edit": "✏️ Editing file...",
    "todowrite": "📋 Updating task list...",
}

FEATURE_FILE = "features.json"


@dataclass(frozen=True)
class ActivityEvent:
    """A progress label derived from one output line."""

    category: str
    label: str


@dataclass(frozen=True)
class AgentEvent:
    """One item on an agent run's event stream."""

    kind: str
    content: str
    category: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.kind, "content": self.content}
        if self.category:
            data["category"] = self.category
        return data


@dataclass(frozen=True)
class ActivityRule:
    """
    One classification rule.

    ``render`` receives the regex match and the full line and returns the
    label, or None to let the next rule try.
    """

    category: str
    pattern: re.Pattern
    render: Callable[[re.Match, str], Optional[str]]


def shorten_path(path: str) -> str:
    """Keep the last two path segments: ``/a/b/c/d.py`` -> ``.../c/d.py``."""
    if not path:
        return ""
    parts = path.replace("\\", "/").split("/")
    if len(parts) <= 2:
        return path
    return f".../{parts[-2]}/{parts[-1]}"


def truncate_command(command: str, limit: int = MAX_COMMAND_LABEL_LENGTH) -> str:
    """Trim a command for display; longer ones are cut to ``limit`` chars ending in ``...``."""
    command = (command or "").strip()
    if len(command) <= limit:
        return command
    return command[: limit - 3] + "..."


def _tool_label(match: re.Match, line: str) -> str:
    tool = match.group(1)
    return TOOL_LABELS.get(tool.lower(), f"🔧 {tool}...")


def _feature_label(match: re.Match, line: str) -> Optional[str]:
    lowered = line.lower()
    if "writ" in lowered or "creat" in lowered:
        return "📋 Writing features.json..."
    if "read" in lowered or "load" in lowered:
        return "📋 Loading features..."
    return None


def _feature_path_label(match: re.Match, line: str) -> Optional[str]:
    if FEATURE_FILE in match.group(1):
        return "📋 Updating features.json..."
    return None


ACTIVITY_RULES: list[ActivityRule] = [
    ActivityRule("tool", re.compile(r"⏺\s*(\w+)"), _tool_label),
    ActivityRule(
        "reading",
        re.compile(r"(?:Read|Reading)(?:\s+file)?[:\s]+([^\s]+)", re.IGNORECASE),
        lambda m, line: f"📖 Reading: {shorten_path(m.group(1))}",
    ),
    ActivityRule(
        "writing",
        re.compile(r"(?:Write|Writing|Wrote)(?:\s+(?:to\s+)?file)?[:\s]+([^\s]+)", re.IGNORECASE),
        lambda m, line: f"✏️ Writing: {shorten_path(m.group(1))}",
    ),
    ActivityRule(
        "running",
        re.compile(r"(?:Bash|Running|Executing)[:\s]+(.+)", re.IGNORECASE),
        lambda m, line: f"🔧 Running: {truncate_command(m.group(1))}",
    ),
    ActivityRule("features", re.compile(r"features?(?:\.json)?", re.IGNORECASE), _feature_label),
    ActivityRule("features", re.compile(r'"path"\s*:\s*"([^"]+)"'), _feature_path_label),
    ActivityRule(
        "thinking",
        re.compile(r"thinking|analyzing|considering|planning", re.IGNORECASE),
        lambda m, line: "🤔 Analyzing...",
    ),
]


def parse_activity(line: str, rules: Optional[list[ActivityRule]] = None) -> Optional[ActivityEvent]:
    """Classify one output line, or return None if it carries no recognizable signal."""
    if not line or not line.strip():
        return None
    for rule in ACTIVITY_RULES if rules is None else rules:
        match = rule.pattern.search(line)
        if not match:
            continue
        label = rule.render(match, line)
        if label:
            return ActivityEvent(rule.category, label)
    return None


def tool_activity(tool_name: str) -> ActivityEvent:
    """Label for a structured tool call (SDK backend), matching the ⏺ marker labels."""
    return ActivityEvent("tool", TOOL_LABELS.get(tool_name.lower(), f"🔧 {tool_name}..."))


class ActivityStream:
    """
    Per-run event producer.

    For every raw line ``feed`` yields, in order: the activity label if it
    differs from the previous one, the raw line itself, and on every
    ``HEARTBEAT_INTERVAL``-th line that produced no new label, a
    "Processing... (N lines)" heartbeat.
    """

    def __init__(self, rules: Optional[list[ActivityRule]] = None, heartbeat_interval: int = HEARTBEAT_INTERVAL):
        self.rules = rules
        self.heartbeat_interval = heartbeat_interval
        self.line_count = 0
        self.last_label: Optional[str] = None

    def feed(self, line: str) -> Iterator[AgentEvent]:
        self.line_count += 1

        emitted_label = False
        activity = parse_activity(line, self.rules)
        if activity and activity.label != self.last_label:
            self.last_label = activity.label
            emitted_label = True
            yield AgentEvent(EVENT_ACTIVITY, activity.label, activity.category)

        yield AgentEvent(EVENT_LINE, line)

        if not emitted_label and self.line_count % self.heartbeat_interval == 0:
            yield AgentEvent(EVENT_HEARTBEAT, f"⏳ Processing... ({self.line_count} lines)", "progress")

    def note_activity(self, activity: ActivityEvent) -> Iterator[AgentEvent]:
        """Emit an externally detected activity, honouring duplicate suppression."""
        if activity.label != self.last_label:
            self.last_label = activity.label
            yield AgentEvent(EVENT_ACTIVITY, activity.label, activity.category)
