from __future__ import annotations

import base64
import json
import os
import time
from typing import Any

import boto3
from botocore.exceptions import ClientError
from kanban_coordinator import KanbanCoordinator
from kanban_errors import NotFoundError
from kanban_errors import StoreUnavailableError
from kanban_errors import ValidationError
from kanban_log import SCHEMA_VERSION
from kanban_log import emit
from kanban_log import now_iso
from kanban_store import KanbanStore
from kanban_store import new_id


SECTIONS_TABLE_NAME = os.environ.get("KANBAN_SECTIONS_TABLE", "")
TASKS_TABLE_NAME = os.environ.get("KANBAN_TASKS_TABLE", "")

API_PREFIX = ["api"]

_ddb_resource: Any | None = None
_coordinator_instance: KanbanCoordinator | None = None


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb", region_name=_aws_region())
    return _ddb_resource


def _coordinator() -> KanbanCoordinator:
    global _coordinator_instance
    if _coordinator_instance is None:
        store = KanbanStore(
            _ddb(),
            sections_table_name=SECTIONS_TABLE_NAME,
            tasks_table_name=TASKS_TABLE_NAME,
        )
        _coordinator_instance = KanbanCoordinator(store)
    return _coordinator_instance


def _response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": {
            "content-type": "application/json",
            "cache-control": "no-store",
        },
        "body": json.dumps(payload),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(
        status_code,
        {"errorCode": code, "message": message},
        request_id,
    )


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return new_id()


def _parse_body(event: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    raw = event.get("body")
    if raw is None:
        return {}, None
    if not isinstance(raw, str):
        return None, "request body must be a JSON object"
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception:
            return None, "request body base64 decode failed"
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except Exception:
        return None, "request body must be valid JSON"
    if not isinstance(parsed, dict):
        return None, "request body must be a JSON object"
    return parsed, None


def _segments(event: dict[str, Any]) -> list[str]:
    p = str(event.get("path") or "").strip()
    segments = [s for s in p.split("/") if s]
    # Best effort for stage or custom-domain prefixes.
    if "api" in segments:
        segments = segments[segments.index("api") :]
    return segments


def _not_found(e: NotFoundError, request_id: str) -> dict[str, Any]:
    code = {"section": "SECTION_NOT_FOUND", "task": "TASK_NOT_FOUND"}.get(e.kind, "NOT_FOUND")
    return _error(404, code, str(e), request_id)


def _list_sections(request_id: str) -> dict[str, Any]:
    return _response(200, {"items": _coordinator().list_sections()}, request_id)


def _create_section(body: dict[str, Any], request_id: str) -> dict[str, Any]:
    section = _coordinator().create_section(body.get("title"))
    return _response(201, {"section": section}, request_id)


def _create_task(body: dict[str, Any], request_id: str) -> dict[str, Any]:
    task = _coordinator().create_task(body)
    return _response(201, {"task": task}, request_id)


def _update_task(task_id: str, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    task = _coordinator().update_task(task_id, body)
    return _response(200, {"task": task}, request_id)


def _move_task(task_id: str, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    to_section_id = str(body.get("toSectionId") or "").strip()
    if not to_section_id:
        return _error(400, "VALIDATION_ERROR", "toSectionId is required", request_id)
    task = _coordinator().move_task(
        task_id,
        to_section_id=to_section_id,
        from_section_id=str(body.get("fromSectionId") or "").strip() or None,
    )
    return _response(200, {"task": task}, request_id)


def _delete_task(task_id: str, request_id: str) -> dict[str, Any]:
    return _response(200, _coordinator().delete_task(task_id), request_id)


def _route(method: str, segments: list[str], event: dict[str, Any], request_id: str) -> tuple[str, dict[str, Any]]:
    if segments[: len(API_PREFIX)] != API_PREFIX:
        return "", _error(404, "NOT_FOUND", f"route not found: {method} /{'/'.join(segments)}", request_id)
    rest = segments[len(API_PREFIX) :]

    body: dict[str, Any] = {}
    if method in {"POST", "PUT", "PATCH"}:
        parsed, err = _parse_body(event)
        if err:
            return "invalid_body", _error(400, "INVALID_BODY", err, request_id)
        assert parsed is not None
        body = parsed

    # /api/sections
    if rest == ["sections"]:
        if method == "GET":
            return "list_sections", _list_sections(request_id)
        if method == "POST":
            return "create_section", _create_section(body, request_id)

    # /api/tasks
    if rest == ["tasks"] and method == "POST":
        return "create_task", _create_task(body, request_id)

    # /api/tasks/{taskId}
    if len(rest) == 2 and rest[0] == "tasks":
        if method in {"PUT", "PATCH"}:
            return "update_task", _update_task(rest[1], body, request_id)
        if method == "DELETE":
            return "delete_task", _delete_task(rest[1], request_id)

    # /api/tasks/{taskId}/move
    if len(rest) == 3 and rest[0] == "tasks" and rest[2] == "move" and method in {"PATCH", "POST"}:
        return "move_task", _move_task(rest[1], body, request_id)

    # /api/consistency
    if rest == ["consistency"] and method == "GET":
        return "check_consistency", _response(200, _coordinator().check_consistency(), request_id)

    # /api/consistency/repair
    if rest == ["consistency", "repair"] and method == "POST":
        return "repair_consistency", _response(200, _coordinator().repair_consistency(), request_id)

    return "", _error(404, "NOT_FOUND", f"route not found: {method} /{'/'.join(segments)}", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    method = str(event.get("httpMethod") or "").upper()
    segments = _segments(event)
    wide_event: dict[str, Any] = {
        "event": "kanban_api_request",
        "schema_version": SCHEMA_VERSION,
        "ts": now_iso(),
        "request_id": request_id,
        "method": method,
        "path": "/" + "/".join(segments),
    }

    route = ""
    try:
        if not SECTIONS_TABLE_NAME or not TASKS_TABLE_NAME:
            out = _error(500, "MISCONFIGURED", "kanban table env vars are required", request_id)
            wide_event["outcome"] = "misconfigured"
        else:
            route, out = _route(method, segments, event, request_id)
            wide_event["outcome"] = "success" if int(out["statusCode"]) < 400 else "client_error"
    except ValidationError as e:
        out = _error(400, "VALIDATION_ERROR", str(e), request_id)
        wide_event["outcome"] = "client_error"
    except NotFoundError as e:
        out = _not_found(e, request_id)
        wide_event["outcome"] = "client_error"
    except StoreUnavailableError as e:
        out = _error(503, "DDB_THROTTLED", str(e), request_id)
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
    except ClientError as e:
        out = _error(500, "DDB_ERROR", str(e), request_id)
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
    except Exception as e:
        out = _error(500, "INTERNAL_ERROR", str(e), request_id)
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)

    wide_event["route"] = route
    wide_event["status_code"] = int(out["statusCode"])
    emit(wide_event)
    return out
