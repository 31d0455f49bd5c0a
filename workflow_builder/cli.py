"""Command-line interface for the workflow builder engine.

Works on interchange documents on disk, no HTTP server required.

Usage:
    workflow-builder validate flow.json
    workflow-builder apply flow.json patch.json -o flow.new.json
    workflow-builder summarize flow.json
    workflow-builder plan flow.json "add a telegram message" --rule-based
    workflow-builder serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import NoReturn

from dotenv import load_dotenv

from workflow_builder.config import EngineSettings
from workflow_builder.engine.graph_model import WorkflowGraph
from workflow_builder.engine.patch_ir import PatchIRValidationError, op_to_dict, patch_from_json
from workflow_builder.engine.planner import RuleBasedPlanner, create_planner
from workflow_builder.engine.store import WorkflowStore
from workflow_builder.engine.summary import summarize
from workflow_builder.engine.validator import validate_graph

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_document(path: str) -> dict:
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        _fail(f"cannot read workflow {path}: {e}")
    if not isinstance(document, dict):
        _fail(f"{path} is not a workflow document (expected a JSON object)")
    return document


def _parse_graph(path: str) -> WorkflowGraph:
    try:
        return WorkflowGraph.from_document(_read_document(path))
    except ValueError as e:
        _fail(f"{path} is not a valid workflow document: {e}")


def _load_store(path: str) -> WorkflowStore:
    store = WorkflowStore(settings=EngineSettings.from_env())
    try:
        result = store.load_document(_read_document(path))
    except ValueError as e:
        _fail(f"{path} is not a valid workflow document: {e}")
    if not result.ok:
        _fail(f"{path} was rejected:\n  " + "\n  ".join(result.issues))
    return store


def _write_document(store: WorkflowStore, out: str | None) -> None:
    text = json.dumps(store.export_document(), indent=2)
    if out:
        Path(out).write_text(text + "\n", encoding="utf-8")
        print(f"Wrote {out}", file=sys.stderr)
    else:
        print(text)


def _fail(message: str, code: int = 2) -> NoReturn:
    print(f"error: {message}", file=sys.stderr)
    sys.exit(code)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_validate(args: Namespace) -> int:
    graph = _parse_graph(args.file)
    report = validate_graph(graph.nodes, graph.edges)
    for issue in report.issues:
        print(f"ISSUE    {issue}")
    for warning in report.warnings:
        print(f"WARNING  {warning}")
    if report.ok:
        print(f"OK: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    return 0 if report.ok else 1


def _cmd_apply(args: Namespace) -> int:
    store = _load_store(args.file)
    try:
        patch = patch_from_json(Path(args.patches).read_text(encoding="utf-8"))
    except OSError as e:
        _fail(f"cannot read patch {args.patches}: {e}")
    except PatchIRValidationError as e:
        _fail("malformed patch:\n  " + "\n  ".join(e.errors))

    result = store.apply(patch)
    for warning in result.warnings:
        print(f"WARNING  {warning}", file=sys.stderr)
    if not result.ok:
        for issue in result.issues:
            print(f"ISSUE    {issue}", file=sys.stderr)
        return 1
    print(result.diff_summary, file=sys.stderr)
    _write_document(store, args.output)
    return 0


def _cmd_summarize(args: Namespace) -> int:
    print(summarize(_parse_graph(args.file)))
    return 0


def _cmd_plan(args: Namespace) -> int:
    store = _load_store(args.file)
    planner = RuleBasedPlanner() if args.rule_based else create_planner()
    outcome = asyncio.run(store.submit_intent(args.text, planner))

    print(f"Status: {outcome.status} (planner: {planner.name})", file=sys.stderr)
    if outcome.patch is not None:
        print(json.dumps(op_to_dict(outcome.patch), indent=2))
    for issue in outcome.issues:
        print(f"ISSUE    {issue}", file=sys.stderr)
    if outcome.status == "committed" and args.output:
        _write_document(store, args.output)
    return 1 if outcome.status == "rejected" else 0


def _cmd_serve(args: Namespace) -> int:
    from workflow_builder.api import serve

    serve(host=args.host, port=args.port, reload=args.reload)
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="workflow-builder",
        description="Workflow builder engine: validate, patch and plan workflow documents",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    validate_p = sub.add_parser("validate", help="Check a workflow document's invariants")
    validate_p.add_argument("file", help="Workflow document (JSON)")

    apply_p = sub.add_parser("apply", help="Apply a Patch IR file to a workflow document")
    apply_p.add_argument("file", help="Workflow document (JSON)")
    apply_p.add_argument("patches", help="Patch IR file: one op, an array or {\"ops\": [...]}")
    apply_p.add_argument("-o", "--output", metavar="OUT", help="Write the result here (default: stdout)")

    summarize_p = sub.add_parser("summarize", help="Print the planner-facing summary")
    summarize_p.add_argument("file", help="Workflow document (JSON)")

    plan_p = sub.add_parser("plan", help="Turn natural-language intent into a patch")
    plan_p.add_argument("file", help="Workflow document (JSON)")
    plan_p.add_argument("text", help="What to change, in plain words")
    plan_p.add_argument("--rule-based", action="store_true", help="Skip the LLM planner")
    plan_p.add_argument("-o", "--output", metavar="OUT", help="Commit the patch and write the result here")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true")

    return parser


_COMMANDS = {
    "validate": _cmd_validate,
    "apply": _cmd_apply,
    "summarize": _cmd_summarize,
    "plan": _cmd_plan,
    "serve": _cmd_serve,
}


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    settings = EngineSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s: %(message)s")

    parser = build_parser()
    args = parser.parse_args(argv)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(handler(args))


if __name__ == "__main__":
    main()
