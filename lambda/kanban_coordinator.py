"""Ordered multi-step board operations.

A task is referenced from two places: its own ``sectionId`` and the owning
section's ``taskIds`` list. The store cannot update both in one write, so
each operation here runs a fixed sequence of single-item writes. Steps are
ordered so an interrupted sequence leaves a task under-linked (findable but
not listed) rather than listed but missing. Nothing is rolled back; the
reconciler at the bottom of this module detects and repairs what a failed
sequence leaves behind.
"""

from __future__ import annotations

from typing import Any

from kanban_errors import ConsistencyError
from kanban_log import log_event

# Relocation goes through move_task only.
UPDATE_IGNORED_FIELDS = ("id", "taskId", "sectionId", "createdAt", "updatedAt")


class KanbanCoordinator:
    def __init__(self, store: Any) -> None:
        self._store = store

    def list_sections(self) -> list[dict[str, Any]]:
        return [
            {"section": section, "tasks": tasks}
            for section, tasks in self._store.list_sections_with_tasks()
        ]

    def create_section(self, title: Any) -> dict[str, Any]:
        return self._store.create_section(title)

    def create_task(self, fields: dict[str, Any]) -> dict[str, Any]:
        task = self._store.create_task(fields)
        try:
            self._store.add_task_to_section(task["sectionId"], task["id"])
        except Exception as exc:
            # The task exists but is not listed; reconciliation re-lists it.
            log_event(
                "kanban.create_task.listing_failed",
                task_id=task["id"],
                section_id=task["sectionId"],
                error={"type": type(exc).__name__, "message": str(exc)},
            )
        return task

    def update_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        dropped = sorted(k for k in fields if k in UPDATE_IGNORED_FIELDS)
        if dropped:
            log_event("kanban.update_task.fields_ignored", task_id=task_id, fields=dropped)
        editable = {k: v for k, v in fields.items() if k not in UPDATE_IGNORED_FIELDS}
        return self._store.update_task(task_id, editable)

    def move_task(
        self,
        task_id: str,
        *,
        to_section_id: str,
        from_section_id: str | None = None,
    ) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        self._store.get_section(to_section_id)

        current = task["sectionId"]
        claimed = str(from_section_id or "").strip() or current
        if claimed != current:
            log_event(
                "kanban.move_task.stale_from_section",
                task_id=task_id,
                from_section_id=claimed,
                current_section_id=current,
            )

        sources = [claimed] if claimed == current else [claimed, current]
        for section_id in sources:
            if section_id != to_section_id:
                self._store.remove_task_from_section(section_id, task_id)
        self._store.add_task_to_section(to_section_id, task_id)
        return self._store.update_task(task_id, {"sectionId": to_section_id})

    def delete_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        self._store.remove_task_from_section(task["sectionId"], task_id)
        self._store.delete_task(task_id)
        return {"deleted": True, "taskId": task_id}

    # -- reconciliation --------------------------------------------------

    def check_consistency(self) -> dict[str, Any]:
        sections = {s["id"]: s for s in self._store.list_sections()}
        tasks = {t["id"]: t for t in self._store.list_tasks()}

        unlisted: list[dict[str, str]] = []
        misplaced: list[dict[str, str]] = []
        dangling: list[dict[str, str]] = []
        orphaned: list[dict[str, str]] = []
        duplicates: list[dict[str, str]] = []

        for task in tasks.values():
            owner = sections.get(task["sectionId"])
            if owner is None:
                orphaned.append({"taskId": task["id"], "sectionId": task["sectionId"]})
            elif task["id"] not in owner["taskIds"]:
                unlisted.append({"taskId": task["id"], "sectionId": owner["id"]})

        for section in sections.values():
            seen: set[str] = set()
            for task_id in section["taskIds"]:
                entry = {"sectionId": section["id"], "taskId": task_id}
                if task_id in seen:
                    duplicates.append(entry)
                    continue
                seen.add(task_id)
                task = tasks.get(task_id)
                if task is None:
                    dangling.append(entry)
                elif task["sectionId"] != section["id"]:
                    misplaced.append(entry)

        return {
            "consistent": not (unlisted or misplaced or dangling or orphaned or duplicates),
            "sections": len(sections),
            "tasks": len(tasks),
            "unlisted": unlisted,
            "misplaced": misplaced,
            "dangling": dangling,
            "orphaned": orphaned,
            "duplicates": duplicates,
        }

    def repair_consistency(self) -> dict[str, Any]:
        report = self.check_consistency()
        relisted = 0
        unlinked = 0
        for entry in report["unlisted"]:
            self._store.add_task_to_section(entry["sectionId"], entry["taskId"])
            relisted += 1

        # remove_task_from_section drops every occurrence, so one call per
        # (section, task) pair also clears duplicates.
        pairs: list[tuple[str, str]] = []
        for key in ("misplaced", "dangling"):
            for entry in report[key]:
                pair = (entry["sectionId"], entry["taskId"])
                if pair not in pairs:
                    pairs.append(pair)
        for section_id, task_id in pairs:
            self._store.remove_task_from_section(section_id, task_id)
            unlinked += 1
        for entry in report["duplicates"]:
            pair = (entry["sectionId"], entry["taskId"])
            if pair in pairs:
                continue
            pairs.append(pair)
            self._store.remove_task_from_section(*pair)
            self._store.add_task_to_section(*pair)

        if report["orphaned"]:
            log_event(
                "kanban.repair.orphaned_tasks",
                task_ids=[e["taskId"] for e in report["orphaned"]],
            )
        log_event(
            "kanban.repair.applied",
            relisted=relisted,
            unlinked=unlinked,
            consistent_before=report["consistent"],
        )
        return {**report, "repaired": {"relisted": relisted, "unlinked": unlinked}}

    def assert_consistent(self) -> dict[str, Any]:
        report = self.check_consistency()
        if not report["consistent"]:
            raise ConsistencyError(report)
        return report
