"""Task-list document: header, task state machine and declared commands."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from foreman.state.store import atomic_write_text, utcnow_iso

logger = logging.getLogger(__name__)

TASK_LINE_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)[-*]\s+\[(?P<mark>[ xX~!])\]\s+(?P<text>.+?)\s*$"
)
SECTION_PATTERN = re.compile(r"^##\s+(?P<title>.+?)\s*#*\s*$")
BUCKET_PATTERN = re.compile(r"^###\s+(?P<title>.+?)\s*#*\s*$")
FENCE_PATTERN = re.compile(
    r"^```(?P<info>[\w-]*)\s*\n(?P<body>.*?)^```\s*$", re.MULTILINE | re.DOTALL
)
CONTINUATION_PATTERN = re.compile(r"<!--\s*CONTINUATION:\s*(?P<text>.*?)\s*-->", re.DOTALL)
INFORMATIONAL_SUFFIX = re.compile(r"\s+#\s*informational\s*$", re.IGNORECASE)
INFORMATIONAL_PREFIX = re.compile(r"^\[informational\]\s*", re.IGNORECASE)

GATE_FENCE_INFOS = {"", "gates", "bash", "sh", "shell", "text", "console"}
HEADER_KEY_ORDER = ("status", "iteration", "created")


class TaskListError(RuntimeError):
    """Raised when the task-list document cannot be read or written."""


class TaskTransitionError(TaskListError):
    """Raised when a task status transition violates the task state machine."""


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.BLOCKED},
    TaskStatus.BLOCKED: {TaskStatus.PENDING, TaskStatus.IN_PROGRESS},
    TaskStatus.COMPLETED: set(),
}

_MARK_STATUS = {
    "x": TaskStatus.COMPLETED,
    "X": TaskStatus.COMPLETED,
    "~": TaskStatus.IN_PROGRESS,
    "!": TaskStatus.BLOCKED,
}
_STATUS_MARK = {
    TaskStatus.PENDING: " ",
    TaskStatus.IN_PROGRESS: "~",
    TaskStatus.COMPLETED: "x",
    TaskStatus.BLOCKED: "!",
}
_BUCKET_TITLES = {
    TaskStatus.PENDING: "Pending",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.BLOCKED: "Blocked",
}


def _bucket_status(title: str) -> TaskStatus | None:
    normalized = re.sub(r"[^a-z]", "", title.lower())
    if normalized in {"pending", "todo", "backlog", "queued"}:
        return TaskStatus.PENDING
    if normalized in {"inprogress", "active", "current", "doing"}:
        return TaskStatus.IN_PROGRESS
    if normalized in {"completed", "done", "complete", "finished"}:
        return TaskStatus.COMPLETED
    if normalized in {"blocked", "stuck"}:
        return TaskStatus.BLOCKED
    return None


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    order: int = 0
    depth: int = 0
    is_leaf: bool = True


@dataclass(frozen=True, slots=True)
class DeclaredCommand:
    command: str
    informational: bool = False


class TaskList:
    """Ordered tasks with a transition function that guards the single-active rule."""

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self.tasks: list[Task] = list(tasks or [])
        self._refresh_leaves()

    def _refresh_leaves(self) -> None:
        for index, task in enumerate(self.tasks):
            following = self.tasks[index + 1] if index + 1 < len(self.tasks) else None
            task.is_leaf = following is None or following.depth <= task.depth

    def get(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise TaskListError(f"Unknown task: {task_id}")

    def in_progress(self) -> Task | None:
        for task in self.tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                return task
        return None

    def transition(self, task_id: str, status: TaskStatus) -> Task:
        task = self.get(task_id)
        if task.status is status:
            return task
        if status not in ALLOWED_TRANSITIONS[task.status]:
            raise TaskTransitionError(
                f"Illegal transition for {task.id}: {task.status.value} -> {status.value}"
            )
        if status is TaskStatus.IN_PROGRESS:
            active = self.in_progress()
            if active is not None and active.id != task.id:
                raise TaskTransitionError(
                    f"Cannot start {task.id}: {active.id} is already in progress."
                )
        task.status = status
        return task

    def leaves(self) -> list[Task]:
        return [task for task in self.tasks if task.is_leaf]

    def count(self, kind: str) -> int:
        leaves = self.leaves()
        if kind == "all":
            return len(leaves)
        if kind == "pending":
            return sum(
                1
                for task in leaves
                if task.status in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS}
            )
        if kind == "completed":
            return sum(1 for task in leaves if task.status is TaskStatus.COMPLETED)
        if kind == "blocked":
            return sum(1 for task in leaves if task.status is TaskStatus.BLOCKED)
        raise ValueError(f"Unknown task count kind: {kind}")

    def all_complete(self) -> bool:
        return (
            self.count("pending") == 0
            and self.count("blocked") == 0
            and self.count("completed") > 0
        )

    def next_pending(self) -> Task | None:
        for task in self.leaves():
            if task.status is TaskStatus.PENDING:
                return task
        return None

    def start_next(self) -> Task | None:
        """Return the active task, starting the next pending leaf if none is active."""
        active = self.in_progress()
        if active is not None:
            return active
        candidate = self.next_pending()
        if candidate is None:
            return None
        return self.transition(candidate.id, TaskStatus.IN_PROGRESS)

    def add_task(self, description: str) -> Task:
        order = max((task.order for task in self.tasks), default=0) + 1
        task = Task(id=f"task-{order:03d}", description=description.strip(), order=order)
        self.tasks.append(task)
        self._refresh_leaves()
        return task

    def tree_status(self, root_index: int) -> TaskStatus:
        root = self.tasks[root_index]
        if root.is_leaf:
            return root.status
        subtree: list[Task] = []
        for task in self.tasks[root_index + 1 :]:
            if task.depth <= root.depth:
                break
            if task.is_leaf:
                subtree.append(task)
        statuses = {task.status for task in subtree}
        if TaskStatus.IN_PROGRESS in statuses:
            return TaskStatus.IN_PROGRESS
        if statuses == {TaskStatus.COMPLETED}:
            return TaskStatus.COMPLETED
        if TaskStatus.PENDING in statuses:
            return TaskStatus.PENDING
        return TaskStatus.BLOCKED

    @classmethod
    def build(cls, parsed: list[tuple[str, TaskStatus, int]]) -> tuple[TaskList, list[Task]]:
        """Build a task list by replaying parsed statuses through ``transition``.

        Returns the list plus the tasks whose in-progress claim was rejected
        because another task was already active. Parent tasks only aggregate
        their sub-tasks, so their own marks are not replayed.
        """
        tasks = [
            Task(id=f"task-{order:03d}", description=text, order=order, depth=depth)
            for order, (text, _, depth) in enumerate(parsed, start=1)
        ]
        task_list = cls(tasks)
        demoted: list[Task] = []
        for task, (_, status, _) in zip(task_list.tasks, parsed, strict=True):
            if status is TaskStatus.PENDING or not task.is_leaf:
                continue
            try:
                task_list.transition(task.id, status)
            except TaskTransitionError:
                demoted.append(task)
        return task_list, demoted


@dataclass(slots=True)
class Section:
    title: str
    lines: list[str] = field(default_factory=list)


class TaskListDocument:
    def __init__(
        self,
        path: Path,
        header: dict[str, str],
        preamble: list[str],
        sections: list[Section],
        tasks: TaskList,
        *,
        bucketed: bool = True,
        task_notes: list[str] | None = None,
        demoted: list[Task] | None = None,
    ) -> None:
        self.path = path
        self.header = header
        self.preamble = preamble
        self.sections = sections
        self.tasks = tasks
        self.bucketed = bucketed
        self.task_notes = task_notes or []
        self.demoted = demoted or []

    @property
    def spec_name(self) -> str:
        return self.path.parent.name

    @property
    def status(self) -> str:
        return self.header.get("status", "pending")

    @status.setter
    def status(self, value: str) -> None:
        self.header["status"] = value

    @property
    def iteration(self) -> int:
        try:
            return int(self.header.get("iteration", "0"))
        except ValueError:
            return 0

    @iteration.setter
    def iteration(self, value: int) -> None:
        self.header["iteration"] = str(int(value))

    def section(self, title: str) -> Section | None:
        wanted = title.strip().lower()
        for section in self.sections:
            if section.title.strip().lower() == wanted:
                return section
        return None

    @classmethod
    def load(cls, path: Path) -> TaskListDocument:
        if not path.exists():
            raise TaskListError(f"Task list not found: {path}")
        return cls.parse(path.read_text(encoding="utf-8"), path=path)

    @classmethod
    def parse(cls, text: str, *, path: Path) -> TaskListDocument:
        lines = text.splitlines()
        header: dict[str, str] = {}
        if lines and lines[0].strip() == "---":
            for index in range(1, len(lines)):
                line = lines[index]
                if line.strip() == "---":
                    lines = lines[index + 1 :]
                    break
                key, sep, value = line.partition(":")
                if sep and key.strip():
                    header[key.strip()] = value.strip()
            else:
                raise TaskListError(f"Unterminated header in {path}")

        preamble: list[str] = []
        sections: list[Section] = []
        current: Section | None = None
        in_fence = False
        for line in lines:
            if line.startswith("```"):
                in_fence = not in_fence
            match = None if in_fence else SECTION_PATTERN.match(line)
            if match:
                current = Section(title=match.group("title"))
                sections.append(current)
                continue
            if current is None:
                preamble.append(line)
            else:
                current.lines.append(line)

        parsed: list[tuple[str, TaskStatus, int]] = []
        task_notes: list[str] = []
        bucketed = False
        tasks_section = next((s for s in sections if s.title.lower() == "tasks"), None)
        if tasks_section is not None:
            bucket: TaskStatus | None = None
            indent_stack: list[int] = []
            for line in tasks_section.lines:
                bucket_match = BUCKET_PATTERN.match(line)
                if bucket_match:
                    bucket = _bucket_status(bucket_match.group("title"))
                    bucketed = bucketed or bucket is not None
                    indent_stack = []
                    continue
                task_match = TASK_LINE_PATTERN.match(line)
                if not task_match:
                    if line.strip() and not parsed:
                        task_notes.append(line)
                    continue
                indent = len(task_match.group("indent").replace("\t", "    "))
                while indent_stack and indent_stack[-1] >= indent:
                    indent_stack.pop()
                depth = len(indent_stack)
                indent_stack.append(indent)
                mark = task_match.group("mark")
                status = _MARK_STATUS.get(mark)
                if status is None:
                    status = (
                        bucket
                        if bucket in {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}
                        else TaskStatus.PENDING
                    )
                parsed.append((task_match.group("text"), status, depth))

        task_list, demoted = TaskList.build(parsed)
        for task in demoted:
            logger.warning(
                "Task %s claimed in-progress while %s is active; kept pending",
                task.id,
                task_list.in_progress().id if task_list.in_progress() else "another task",
            )
        return cls(
            path=path,
            header=header,
            preamble=preamble,
            sections=sections,
            tasks=task_list,
            bucketed=bucketed or tasks_section is None,
            task_notes=task_notes,
            demoted=demoted,
        )

    def _task_line(self, index: int) -> str:
        task = self.tasks.tasks[index]
        status = self.tasks.tree_status(index)
        return f"{'  ' * task.depth}- [{_STATUS_MARK[status]}] {task.description}"

    def _render_tasks(self) -> list[str]:
        lines: list[str] = [*self.task_notes]
        if lines:
            lines.append("")
        roots = [index for index, task in enumerate(self.tasks.tasks) if task.depth == 0]
        trees: list[tuple[TaskStatus, list[int]]] = []
        for position, root_index in enumerate(roots):
            end = roots[position + 1] if position + 1 < len(roots) else len(self.tasks.tasks)
            trees.append((self.tasks.tree_status(root_index), list(range(root_index, end))))

        if not self.bucketed:
            for _, indexes in trees:
                lines.extend(self._task_line(index) for index in indexes)
            lines.append("")
            return lines

        for status in (
            TaskStatus.PENDING,
            TaskStatus.IN_PROGRESS,
            TaskStatus.COMPLETED,
            TaskStatus.BLOCKED,
        ):
            lines.append(f"### {_BUCKET_TITLES[status]}")
            for tree_status, indexes in trees:
                if tree_status is status:
                    lines.extend(self._task_line(index) for index in indexes)
            lines.append("")
        return lines

    def render(self) -> str:
        header = dict(self.header)
        header.setdefault("status", "pending")
        header.setdefault("iteration", "0")
        header.setdefault("created", utcnow_iso())
        out: list[str] = ["---"]
        for key in HEADER_KEY_ORDER:
            out.append(f"{key}: {header.pop(key)}")
        for key, value in header.items():
            out.append(f"{key}: {value}")
        out.append("---")
        out.extend(self.preamble)

        sections = list(self.sections)
        if self.section("tasks") is None and self.tasks.tasks:
            sections.insert(0, Section(title="Tasks"))
        for section in sections:
            if out and out[-1].strip():
                out.append("")
            out.append(f"## {section.title}")
            if section.title.strip().lower() == "tasks":
                out.append("")
                out.extend(self._render_tasks())
            else:
                out.extend(section.lines)
        return "\n".join(out).rstrip() + "\n"

    def save(self) -> None:
        atomic_write_text(self.path, self.render())

    def _body_text(self) -> str:
        lines = list(self.preamble)
        for section in self.sections:
            lines.append(f"## {section.title}")
            lines.extend(section.lines)
        return "\n".join(lines) + "\n"

    def _fenced_blocks(self, text: str) -> list[tuple[str, str]]:
        return [
            (match.group("info").lower(), match.group("body"))
            for match in FENCE_PATTERN.finditer(text)
        ]

    def gates(self) -> list[DeclaredCommand]:
        section = self.section("quality gates")
        if section is None:
            return []
        commands: list[DeclaredCommand] = []
        for info, body in self._fenced_blocks("\n".join(section.lines) + "\n"):
            if info not in GATE_FENCE_INFOS:
                continue
            commands.extend(_declared_commands(body))
        return commands

    def declared_commands(self, kind: str) -> list[DeclaredCommand]:
        """Commands from fenced blocks tagged ``kind`` anywhere in the document."""
        commands: list[DeclaredCommand] = []
        for info, body in self._fenced_blocks(self._body_text()):
            if info == kind:
                commands.extend(_declared_commands(body))
        return commands

    def continuation(self) -> str | None:
        matches = CONTINUATION_PATTERN.findall(self._body_text())
        if not matches:
            return None
        text = matches[-1].strip()
        return text or None


def _declared_commands(body: str) -> list[DeclaredCommand]:
    commands: list[DeclaredCommand] = []
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("$ "):
            line = line[2:].strip()
        informational = False
        if INFORMATIONAL_PREFIX.match(line):
            informational = True
            line = INFORMATIONAL_PREFIX.sub("", line)
        if INFORMATIONAL_SUFFIX.search(line):
            informational = True
            line = INFORMATIONAL_SUFFIX.sub("", line)
        if line:
            commands.append(DeclaredCommand(command=line, informational=informational))
    return commands


def new_document(path: Path, title: str) -> TaskListDocument:
    text = "\n".join(
        [
            "---",
            "status: pending",
            "iteration: 0",
            f"created: {utcnow_iso()}",
            "---",
            f"# {title}",
            "",
            "## Requirements",
            "",
            "## Tasks",
            "",
            "## Quality Gates",
            "",
            "## Exit Criteria",
            "",
            "## Notes",
            "",
        ]
    )
    return TaskListDocument.parse(text, path=path)
