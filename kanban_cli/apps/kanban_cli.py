from __future__ import annotations

import argparse
import os
import sys
from typing import Any

import click
import typer
from rich.console import Console

from .. import __version__
from ..cli_shared import (
    DEFAULT_STACK,
    KANBAN_STACK,
    GlobalOpts,
    OpError,
    UsageError,
    _eprint,
    _env_or_none,
    _load_json_object,
    _print_json,
    kanban_request,
    resolve_endpoint,
)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json_output", False))


def _cell(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        return "-"
    return text


def _print_table(*, headers: list[str], rows: list[list[str]], empty_message: str) -> None:
    if not rows:
        sys.stdout.write(f"{empty_message}\n")
        return
    widths: list[int] = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    sys.stdout.write("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)) + "\n")
    sys.stdout.write("  ".join("-" * widths[i] for i in range(len(headers))) + "\n")
    for row in rows:
        sys.stdout.write("  ".join(row[i].ljust(widths[i]) for i in range(len(headers))) + "\n")


def _task_fields_from_args(args: argparse.Namespace, *, require_all: bool) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if getattr(args, "fields_json", None):
        fields.update(_load_json_object(raw=str(args.fields_json), label="--fields-json"))
    for key, attr in (
        ("title", "title"),
        ("description", "description"),
        ("dueDate", "due_date"),
        ("tag", "tag"),
        ("sectionId", "section_id"),
    ):
        val = getattr(args, attr, None)
        if val is not None and str(val).strip():
            fields[key] = str(val).strip()

    assignee_parts = {
        "id": getattr(args, "assignee_id", None),
        "name": getattr(args, "assignee_name", None),
        "avatar": getattr(args, "assignee_avatar", None),
    }
    provided = {k: str(v).strip() for k, v in assignee_parts.items() if v is not None and str(v).strip()}
    if provided:
        base = fields.get("assignee") or {}
        if not isinstance(base, dict):
            raise UsageError("--fields-json assignee must be a JSON object")
        merged = dict(base)
        merged.update(provided)
        fields["assignee"] = merged

    if require_all:
        missing = [
            k
            for k in ("title", "description", "dueDate", "tag", "sectionId", "assignee")
            if k not in fields
        ]
        if missing:
            raise UsageError(f"missing task fields: {', '.join(missing)}")
    elif not fields:
        raise UsageError("no fields to update (pass options or --fields-json)")
    return fields


def _describe_task(task: dict[str, Any]) -> str:
    assignee = task.get("assignee") if isinstance(task.get("assignee"), dict) else {}
    return (
        f"{_cell(task.get('id'))} [{_cell(task.get('tag'))}] "
        f"section={_cell(task.get('sectionId'))} due={_cell(task.get('dueDate'))} "
        f"assignee={_cell(assignee.get('name'))} title={_cell(task.get('title'))}"
    )


def cmd_sections_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = kanban_request(method="GET", endpoint=resolve_endpoint(g), path="/sections")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = out.get("items")
    count = 0
    if isinstance(items, list):
        for entry in items:
            if not isinstance(entry, dict):
                continue
            section = entry.get("section") if isinstance(entry.get("section"), dict) else {}
            tasks = entry.get("tasks") if isinstance(entry.get("tasks"), list) else []
            count += 1
            sys.stdout.write(f"# {_cell(section.get('title'))} ({_cell(section.get('id'))}) tasks={len(tasks)}\n")
            for task in tasks:
                if isinstance(task, dict):
                    sys.stdout.write(f"- {_describe_task(task)}\n")
    if count == 0:
        sys.stdout.write("No sections.\n")
    return 0


def cmd_sections_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    title = str(args.title or "").strip()
    if not title:
        raise UsageError("section title is required")
    out = kanban_request(
        method="POST",
        endpoint=resolve_endpoint(g),
        path="/sections",
        body_obj={"title": title},
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    section = out.get("section") if isinstance(out.get("section"), dict) else {}
    sys.stdout.write(f'created section {_cell(section.get("id"))} title="{_cell(section.get("title"))}"\n')
    return 0


def cmd_tasks_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    fields = _task_fields_from_args(args, require_all=True)
    out = kanban_request(method="POST", endpoint=resolve_endpoint(g), path="/tasks", body_obj=fields)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"created task {_describe_task(task)}\n")
    return 0


def cmd_tasks_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    fields = _task_fields_from_args(args, require_all=False)
    if "sectionId" in fields:
        raise UsageError("use 'tasks move' to change a task's section")
    out = kanban_request(
        method="PATCH",
        endpoint=resolve_endpoint(g),
        path=f"/tasks/{args.task_id}",
        body_obj=fields,
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"updated task {_describe_task(task)}\n")
    return 0


def cmd_tasks_move(args: argparse.Namespace, g: GlobalOpts) -> int:
    body: dict[str, Any] = {"toSectionId": str(args.to_section_id or "").strip()}
    if not body["toSectionId"]:
        raise UsageError("--to is required")
    from_section_id = str(args.from_section_id or "").strip()
    if from_section_id:
        body["fromSectionId"] = from_section_id
    out = kanban_request(
        method="PATCH",
        endpoint=resolve_endpoint(g),
        path=f"/tasks/{args.task_id}/move",
        body_obj=body,
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"moved task {_cell(task.get('id'))} to section {_cell(task.get('sectionId'))}\n")
    return 0


def cmd_tasks_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = kanban_request(method="DELETE", endpoint=resolve_endpoint(g), path=f"/tasks/{args.task_id}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted task {_cell(out.get('taskId') or args.task_id)}\n")
    return 0


def _print_report(out: dict[str, Any]) -> None:
    state = "consistent" if out.get("consistent") else "INCONSISTENT"
    sys.stdout.write(f"board is {state}: sections={out.get('sections', 0)} tasks={out.get('tasks', 0)}\n")
    rows: list[list[str]] = []
    for kind in ("unlisted", "misplaced", "dangling", "orphaned", "duplicates"):
        for entry in out.get(kind) or []:
            if isinstance(entry, dict):
                rows.append([kind, _cell(entry.get("sectionId")), _cell(entry.get("taskId"))])
    if rows:
        _print_table(headers=["problem", "sectionId", "taskId"], rows=rows, empty_message="")


def cmd_consistency_check(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = kanban_request(method="GET", endpoint=resolve_endpoint(g), path="/consistency")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
    else:
        _print_report(out)
    # Non-zero so scripts can alert on drift.
    return 0 if out.get("consistent") else 3


def cmd_consistency_repair(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = kanban_request(method="POST", endpoint=resolve_endpoint(g), path="/consistency/repair")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_report(out)
    repaired = out.get("repaired") if isinstance(out.get("repaired"), dict) else {}
    sys.stdout.write(
        f"repaired: relisted={repaired.get('relisted', 0)} unlinked={repaired.get('unlinked', 0)}\n"
    )
    orphaned = out.get("orphaned") or []
    if orphaned and not g.quiet:
        _eprint(f"left {len(orphaned)} orphaned task(s) in place; inspect them manually")
    return 0


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _render_usage_error_with_help(*, message: str, ctx: click.Context | None = None, quiet: bool = False) -> None:
    _rich_error(message)
    if quiet:
        return
    help_text = ""
    if isinstance(ctx, click.Context):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if help_text:
        _eprint("")
        _eprint(help_text)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"kanban {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="kanban",
    help="Operate a deployed kanban board API.",
    no_args_is_help=True,
    add_completion=False,
)
sections_app = typer.Typer(help="Board sections (columns)", no_args_is_help=True)
tasks_app = typer.Typer(help="Task cards", no_args_is_help=True)
consistency_app = typer.Typer(
    help="Section/task membership checks and repair",
    no_args_is_help=True,
)

app.add_typer(sections_app, name="sections")
app.add_typer(tasks_app, name="tasks")
app.add_typer(consistency_app, name="consistency")


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(None, "--endpoint", help="API base URL ending in /api (env: KANBAN_ENDPOINT)"),
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help=f"CloudFormation stack name used to look up the endpoint (default: env {KANBAN_STACK} or {DEFAULT_STACK})",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON API responses"),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Suppress usage help and advisory notes on stderr"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    if profile:
        os.environ["AWS_PROFILE"] = profile
    if region:
        os.environ["AWS_REGION"] = region
    g = GlobalOpts(
        stack=(stack or _env_or_none(KANBAN_STACK) or DEFAULT_STACK),
        pretty=not plain_json,
        quiet=quiet,
        endpoint=(endpoint or "").strip(),
    )
    ctx.obj = {"g": g, "json_output": bool(json_output)}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.find_root().obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    return GlobalOpts(stack=_env_or_none(KANBAN_STACK) or DEFAULT_STACK, pretty=True, quiet=False)


def _json_from_ctx(ctx: typer.Context) -> bool:
    obj = ctx.find_root().obj
    if isinstance(obj, dict):
        return bool(obj.get("json_output", False))
    return False


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(json_output=_json_from_ctx(ctx), **kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx, quiet=g.quiet)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


@sections_app.command("list", help="List sections with their resolved tasks.")
def sections_list(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_sections_list)


@sections_app.command("create", help="Create an empty section.")
def sections_create(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Section title"),
) -> None:
    _invoke(ctx, cmd_sections_create, title=title)


@tasks_app.command("create", help="Create a task in a section.")
def tasks_create(
    ctx: typer.Context,
    section_id: str = typer.Option(..., "--section", help="Owning section ID"),
    title: str | None = typer.Option(None, "--title", help="Task title"),
    description: str | None = typer.Option(None, "--description", help="Task description"),
    due_date: str | None = typer.Option(None, "--due", help="Due date (ISO-8601, e.g. 2024-01-01)"),
    tag: str | None = typer.Option(None, "--tag", help="Category label"),
    assignee_id: str | None = typer.Option(None, "--assignee-id", help="Assignee ID"),
    assignee_name: str | None = typer.Option(None, "--assignee-name", help="Assignee display name"),
    assignee_avatar: str | None = typer.Option(None, "--assignee-avatar", help="Assignee avatar URL"),
    fields_json: str | None = typer.Option(None, "--fields-json", help="Task fields as a JSON object"),
) -> None:
    _invoke(
        ctx,
        cmd_tasks_create,
        section_id=section_id,
        title=title,
        description=description,
        due_date=due_date,
        tag=tag,
        assignee_id=assignee_id,
        assignee_name=assignee_name,
        assignee_avatar=assignee_avatar,
        fields_json=fields_json,
    )


@tasks_app.command("update", help="Edit task fields (not its section; use 'tasks move').")
def tasks_update(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title", help="Task title"),
    description: str | None = typer.Option(None, "--description", help="Task description"),
    due_date: str | None = typer.Option(None, "--due", help="Due date (ISO-8601)"),
    tag: str | None = typer.Option(None, "--tag", help="Category label"),
    assignee_id: str | None = typer.Option(None, "--assignee-id", help="Assignee ID"),
    assignee_name: str | None = typer.Option(None, "--assignee-name", help="Assignee display name"),
    assignee_avatar: str | None = typer.Option(None, "--assignee-avatar", help="Assignee avatar URL"),
    fields_json: str | None = typer.Option(None, "--fields-json", help="Fields to merge as a JSON object"),
) -> None:
    _invoke(
        ctx,
        cmd_tasks_update,
        task_id=task_id,
        title=title,
        description=description,
        due_date=due_date,
        tag=tag,
        assignee_id=assignee_id,
        assignee_name=assignee_name,
        assignee_avatar=assignee_avatar,
        fields_json=fields_json,
    )


@tasks_app.command("move", help="Move a task to another section.")
def tasks_move(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    to_section_id: str = typer.Option(..., "--to", help="Target section ID"),
    from_section_id: str | None = typer.Option(
        None,
        "--from",
        help="Section the task is believed to be in (default: server-side current section)",
    ),
) -> None:
    _invoke(
        ctx,
        cmd_tasks_move,
        task_id=task_id,
        to_section_id=to_section_id,
        from_section_id=from_section_id,
    )


@tasks_app.command("delete", help="Delete a task and unlist it from its section.")
def tasks_delete(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke(ctx, cmd_tasks_delete, task_id=task_id)


@consistency_app.command("check", help="Report membership violations (exit 3 when inconsistent).")
def consistency_check(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_consistency_check)


@consistency_app.command("repair", help="Re-list unlisted tasks and drop stale listings.")
def consistency_repair(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_consistency_repair)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="kanban", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(message=str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
