import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "lambda"):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from kanban_errors import NotFoundError  # noqa: E402
from kanban_errors import ValidationError  # noqa: E402
from kanban_store import new_id  # noqa: E402
from kanban_store import validate_task_fields  # noqa: E402


class FakeStore:
    """In-memory stand-in for KanbanStore with the same contract.

    ``fail_next[method]`` makes the next call to that method raise the given
    exception (once), to exercise partial-failure paths.
    """

    def __init__(self) -> None:
        self.sections: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.fail_next: dict[str, Exception] = {}

    def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        exc = self.fail_next.pop(name, None)
        if exc is not None:
            raise exc

    def create_section(self, title: Any) -> dict[str, Any]:
        self._enter("create_section", title)
        clean = str(title or "").strip()
        if not clean:
            raise ValidationError("title is required")
        section = {"id": new_id(), "title": clean, "taskIds": [], "createdAt": "", "updatedAt": ""}
        self.sections[section["id"]] = section
        return dict(section, taskIds=[])

    def get_section(self, section_id: str) -> dict[str, Any]:
        self._enter("get_section", section_id)
        if section_id not in self.sections:
            raise NotFoundError("section", section_id)
        s = self.sections[section_id]
        return dict(s, taskIds=list(s["taskIds"]))

    def list_sections(self) -> list[dict[str, Any]]:
        self._enter("list_sections")
        return [dict(s, taskIds=list(s["taskIds"])) for s in self.sections.values()]

    def list_tasks(self) -> list[dict[str, Any]]:
        self._enter("list_tasks")
        return [dict(t) for t in self.tasks.values()]

    def list_sections_with_tasks(self):
        self._enter("list_sections_with_tasks")
        out = []
        for s in self.sections.values():
            tasks = [dict(self.tasks[t]) for t in s["taskIds"] if t in self.tasks]
            out.append((dict(s, taskIds=list(s["taskIds"])), tasks))
        return out

    def create_task(self, fields: dict[str, Any]) -> dict[str, Any]:
        self._enter("create_task", fields)
        clean = validate_task_fields(fields, partial=False)
        if clean["sectionId"] not in self.sections:
            raise NotFoundError("section", clean["sectionId"])
        task = {"id": new_id(), **clean, "createdAt": "", "updatedAt": ""}
        self.tasks[task["id"]] = task
        return dict(task)

    def get_task(self, task_id: str) -> dict[str, Any]:
        self._enter("get_task", task_id)
        if task_id not in self.tasks:
            raise NotFoundError("task", task_id)
        return dict(self.tasks[task_id])

    def update_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._enter("update_task", task_id, fields)
        changes = validate_task_fields(fields, partial=True)
        if task_id not in self.tasks:
            raise NotFoundError("task", task_id)
        if "sectionId" in changes and changes["sectionId"] not in self.sections:
            raise NotFoundError("section", changes["sectionId"])
        self.tasks[task_id].update(changes)
        return dict(self.tasks[task_id])

    def delete_task(self, task_id: str) -> None:
        self._enter("delete_task", task_id)
        if task_id not in self.tasks:
            raise NotFoundError("task", task_id)
        del self.tasks[task_id]

    def add_task_to_section(self, section_id: str, task_id: str) -> None:
        self._enter("add_task_to_section", section_id, task_id)
        if section_id not in self.sections:
            raise NotFoundError("section", section_id)
        ids = self.sections[section_id]["taskIds"]
        if task_id not in ids:
            ids.append(task_id)

    def remove_task_from_section(self, section_id: str, task_id: str) -> None:
        self._enter("remove_task_from_section", section_id, task_id)
        section = self.sections.get(section_id)
        if section is None:
            return
        section["taskIds"] = [t for t in section["taskIds"] if t != task_id]

    def mutations(self) -> list[str]:
        reads = {"get_task", "get_section", "list_sections", "list_tasks", "list_sections_with_tasks"}
        return [name for name, _args in self.calls if name not in reads]


def task_fields(section_id: str, **overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "title": "Write spec",
        "description": "Draft the board API",
        "dueDate": "2024-01-01",
        "assignee": {"id": "u1", "name": "Ann", "avatar": "a.png"},
        "tag": "docs",
        "sectionId": section_id,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
