from __future__ import annotations

import secrets
import struct
import time
from datetime import datetime
from typing import Any

from botocore.exceptions import ClientError
from kanban_errors import NotFoundError
from kanban_errors import StoreUnavailableError
from kanban_errors import ValidationError
from kanban_log import now_iso

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
ID_LENGTH = 22

TASK_TEXT_FIELDS = ("title", "description", "tag")
ASSIGNEE_FIELDS = ("id", "name", "avatar")
# Fields update_task may write; id and timestamps are store-owned.
TASK_MUTABLE_FIELDS = ("title", "description", "dueDate", "assignee", "tag", "sectionId")

BATCH_GET_LIMIT = 100
MAX_REMOVE_CONFLICTS = 5
MAX_BATCH_GET_ATTEMPTS = 5
BATCH_GET_BACKOFF_SECONDS = (0.05, 0.1, 0.2, 0.4)


def new_id() -> str:
    """Return a time-ordered 22-char Base58 id (UUIDv7 layout)."""
    ts_bytes = struct.pack(">Q", int(time.time() * 1000))[2:]
    raw = bytearray(ts_bytes + secrets.token_bytes(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    n = int.from_bytes(bytes(raw), "big")
    chars: list[str] = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(BASE58_ALPHABET[rem])
    encoded = "".join(reversed(chars))
    return BASE58_ALPHABET[0] * (ID_LENGTH - len(encoded)) + encoded


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _is_condition_failure(e: ClientError) -> bool:
    return _error_code(e) == "ConditionalCheckFailedException"


def _require_text(fields: dict[str, Any], key: str) -> str:
    val = fields.get(key)
    s = str(val).strip() if val is not None else ""
    if not s:
        raise ValidationError(f"{key} is required")
    return s


def _normalize_due_date(raw: Any) -> str:
    s = str(raw or "").strip()
    if not s:
        raise ValidationError("dueDate is required")
    candidate = s[:-1] + "+00:00" if s.endswith("Z") else s
    try:
        datetime.fromisoformat(candidate)
    except ValueError:
        raise ValidationError(f"dueDate must be an ISO-8601 date: {s}") from None
    return s


def _normalize_assignee(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise ValidationError("assignee must be an object with id, name and avatar")
    out: dict[str, str] = {}
    for key in ASSIGNEE_FIELDS:
        val = raw.get(key)
        s = str(val).strip() if val is not None else ""
        if not s:
            raise ValidationError(f"assignee.{key} is required")
        out[key] = s
    return out


def validate_task_fields(fields: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    """Normalize task fields.

    With ``partial`` only the provided mutable fields are checked and returned;
    otherwise every required field must be present.
    """
    out: dict[str, Any] = {}
    for key in TASK_MUTABLE_FIELDS:
        if partial and key not in fields:
            continue
        if key in TASK_TEXT_FIELDS or key == "sectionId":
            out[key] = _require_text(fields, key)
        elif key == "dueDate":
            out[key] = _normalize_due_date(fields.get(key))
        elif key == "assignee":
            out[key] = _normalize_assignee(fields.get(key))
    return out


def section_to_json(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(item.get("sectionId") or ""),
        "title": str(item.get("title") or ""),
        "taskIds": [str(t) for t in (item.get("taskIds") or [])],
        "createdAt": str(item.get("createdAt") or ""),
        "updatedAt": str(item.get("updatedAt") or ""),
    }


def task_to_json(item: dict[str, Any]) -> dict[str, Any]:
    assignee = item.get("assignee") or {}
    if not isinstance(assignee, dict):
        assignee = {}
    return {
        "id": str(item.get("taskId") or ""),
        "title": str(item.get("title") or ""),
        "description": str(item.get("description") or ""),
        "dueDate": str(item.get("dueDate") or ""),
        "assignee": {k: str(assignee.get(k) or "") for k in ASSIGNEE_FIELDS},
        "tag": str(item.get("tag") or ""),
        "sectionId": str(item.get("sectionId") or ""),
        "createdAt": str(item.get("createdAt") or ""),
        "updatedAt": str(item.get("updatedAt") or ""),
    }


class KanbanStore:
    """CRUD primitives over the sections and tasks tables.

    Every method is a single DynamoDB request (or a paginated read); nothing
    here spans both tables atomically. Membership edits on a section are
    idempotent so callers can repeat them after a partial failure.
    """

    def __init__(self, resource: Any, *, sections_table_name: str, tasks_table_name: str) -> None:
        self._ddb = resource
        self._tasks_table_name = tasks_table_name
        self._sections = resource.Table(sections_table_name)
        self._tasks = resource.Table(tasks_table_name)

    # -- sections --------------------------------------------------------

    def create_section(self, title: Any) -> dict[str, Any]:
        clean = _require_text({"title": title}, "title")
        now = now_iso()
        item = {
            "sectionId": new_id(),
            "title": clean,
            "taskIds": [],
            "createdAt": now,
            "updatedAt": now,
        }
        self._sections.put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(sectionId)",
        )
        return section_to_json(item)

    def _section_item(self, section_id: str) -> dict[str, Any] | None:
        if not section_id:
            return None
        resp = self._sections.get_item(Key={"sectionId": section_id}, ConsistentRead=True)
        item = resp.get("Item")
        return item if isinstance(item, dict) else None

    def get_section(self, section_id: str) -> dict[str, Any]:
        item = self._section_item(section_id)
        if item is None:
            raise NotFoundError("section", section_id)
        return section_to_json(item)

    def list_sections(self) -> list[dict[str, Any]]:
        out = [section_to_json(item) for item in self._scan(self._sections)]
        out.sort(key=lambda s: (s["createdAt"], s["id"]))
        return out

    def add_task_to_section(self, section_id: str, task_id: str) -> None:
        try:
            self._sections.update_item(
                Key={"sectionId": section_id},
                UpdateExpression=(
                    "SET taskIds = list_append(if_not_exists(taskIds, :empty), :ids), updatedAt = :now"
                ),
                ConditionExpression="attribute_exists(sectionId) AND NOT contains(taskIds, :taskId)",
                ExpressionAttributeValues={
                    ":empty": [],
                    ":ids": [task_id],
                    ":taskId": task_id,
                    ":now": now_iso(),
                },
            )
        except ClientError as e:
            if not _is_condition_failure(e):
                raise
            # Either already listed (no-op) or the section is gone.
            if self._section_item(section_id) is None:
                raise NotFoundError("section", section_id) from None

    def remove_task_from_section(self, section_id: str, task_id: str) -> None:
        conflicts = 0
        while True:
            item = self._section_item(section_id)
            if item is None:
                return
            ids = [str(t) for t in (item.get("taskIds") or [])]
            if task_id not in ids:
                return
            idx = ids.index(task_id)
            try:
                self._sections.update_item(
                    Key={"sectionId": section_id},
                    UpdateExpression=f"REMOVE taskIds[{idx}] SET updatedAt = :now",
                    ConditionExpression=f"taskIds[{idx}] = :taskId",
                    ExpressionAttributeValues={":taskId": task_id, ":now": now_iso()},
                )
            except ClientError as e:
                # A concurrent writer shifted the list; re-read and retry.
                if not _is_condition_failure(e) or conflicts >= MAX_REMOVE_CONFLICTS:
                    raise
                conflicts += 1

    # -- tasks -----------------------------------------------------------

    def create_task(self, fields: dict[str, Any]) -> dict[str, Any]:
        clean = validate_task_fields(fields, partial=False)
        if self._section_item(clean["sectionId"]) is None:
            raise NotFoundError("section", clean["sectionId"])
        now = now_iso()
        item = {"taskId": new_id(), **clean, "createdAt": now, "updatedAt": now}
        self._tasks.put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(taskId)",
        )
        return task_to_json(item)

    def get_task(self, task_id: str) -> dict[str, Any]:
        item = None
        if task_id:
            resp = self._tasks.get_item(Key={"taskId": task_id}, ConsistentRead=True)
            item = resp.get("Item")
        if not isinstance(item, dict):
            raise NotFoundError("task", task_id)
        return task_to_json(item)

    def list_tasks(self) -> list[dict[str, Any]]:
        return [task_to_json(item) for item in self._scan(self._tasks)]

    def update_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        changes = validate_task_fields(fields, partial=True)
        if not changes:
            return self.get_task(task_id)
        if "sectionId" in changes and self._section_item(changes["sectionId"]) is None:
            raise NotFoundError("section", changes["sectionId"])

        names: dict[str, str] = {}
        values: dict[str, Any] = {":now": now_iso()}
        assignments = ["updatedAt = :now"]
        for i, key in enumerate(sorted(changes)):
            names[f"#f{i}"] = key
            values[f":v{i}"] = changes[key]
            assignments.append(f"#f{i} = :v{i}")
        try:
            out = self._tasks.update_item(
                Key={"taskId": task_id},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression="attribute_exists(taskId)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFoundError("task", task_id) from None
            raise
        return task_to_json(out.get("Attributes") or {})

    def delete_task(self, task_id: str) -> None:
        if not task_id:
            raise NotFoundError("task", task_id)
        try:
            self._tasks.delete_item(
                Key={"taskId": task_id},
                ConditionExpression="attribute_exists(taskId)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFoundError("task", task_id) from None
            raise

    # -- joins -----------------------------------------------------------

    def list_sections_with_tasks(self) -> list[tuple[dict[str, Any], list[dict[str, Any]]]]:
        sections = self.list_sections()
        wanted: list[str] = []
        seen: set[str] = set()
        for section in sections:
            for task_id in section["taskIds"]:
                if task_id not in seen:
                    seen.add(task_id)
                    wanted.append(task_id)
        by_id = self._batch_get_tasks(wanted)

        out: list[tuple[dict[str, Any], list[dict[str, Any]]]] = []
        for section in sections:
            # Listed ids that no longer resolve are dropped from the join.
            tasks = [by_id[t] for t in section["taskIds"] if t in by_id]
            out.append((section, tasks))
        return out

    def _batch_get_tasks(self, task_ids: list[str]) -> dict[str, dict[str, Any]]:
        found: dict[str, dict[str, Any]] = {}
        for start in range(0, len(task_ids), BATCH_GET_LIMIT):
            chunk = task_ids[start : start + BATCH_GET_LIMIT]
            request: dict[str, Any] = {
                self._tasks_table_name: {
                    "Keys": [{"taskId": t} for t in chunk],
                    "ConsistentRead": True,
                }
            }
            for attempt in range(1, MAX_BATCH_GET_ATTEMPTS + 1):
                resp = self._ddb.batch_get_item(RequestItems=request)
                for item in (resp.get("Responses") or {}).get(self._tasks_table_name, []) or []:
                    if isinstance(item, dict):
                        task = task_to_json(item)
                        found[task["id"]] = task
                request = resp.get("UnprocessedKeys") or {}
                if not request:
                    break
                if attempt == MAX_BATCH_GET_ATTEMPTS:
                    raise StoreUnavailableError(
                        f"batch read still throttled after {MAX_BATCH_GET_ATTEMPTS} attempts"
                    )
                backoff = BATCH_GET_BACKOFF_SECONDS[min(attempt, len(BATCH_GET_BACKOFF_SECONDS)) - 1]
                time.sleep(backoff)
        return found

    @staticmethod
    def _scan(table: Any) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {"ConsistentRead": True}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = table.scan(**kwargs)
            for item in page.get("Items", []) or []:
                if isinstance(item, dict):
                    out.append(item)
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return out
