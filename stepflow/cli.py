"""
Command-line interface for stepflow.

Usage:
    stepflow validate workflow.json
    stepflow compile workflow.json --schemas schemas.json -o plan.json
    stepflow vars workflow.json update_user --schemas schemas.json
    stepflow run workflow.json --input '{"email": "ada@example.com"}' --seed seed.json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stepflow.config import EngineConfig, get_log_format, get_log_level
from stepflow.errors import GraphFormatError, StructuralError, UnresolvedReferenceError
from stepflow.graph.compiler import compile_graph
from stepflow.graph.edge import GraphSpec, parse_graph
from stepflow.graph.executor import ExecutionEngine
from stepflow.graph.schema import DictSchemaLookup, SchemaLookup
from stepflow.graph.validator import validate_graph
from stepflow.graph.visibility import VariableVisibilityResolver
from stepflow.handlers import MemoryCollections, default_registry
from stepflow.observability import configure_logging
from stepflow.runtime.event_bus import EventBus, EventType, WorkflowEvent

logger = logging.getLogger(__name__)

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)


class CLIError(Exception):
    """A user-facing error that ends the command with exit code 2."""


def _read_json(path: str, what: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise CLIError(f"{what} file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise CLIError(f"{what} file is not valid JSON: {path} ({e})") from e


def _load_graph(path: str) -> GraphSpec:
    data = _read_json(path, "Graph")
    try:
        return parse_graph(data)
    except GraphFormatError as e:
        raise CLIError(str(e)) from e


def _load_schemas(path: str | None) -> DictSchemaLookup | None:
    if not path:
        return None
    data = _read_json(path, "Schemas")
    if not isinstance(data, dict):
        raise CLIError("Schemas file must map collection names to field lists")
    return DictSchemaLookup(data)


def _parse_input(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CLIError(f"--input is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CLIError("--input must be a JSON object")
    return data


def _print_structural_error(error: StructuralError) -> None:
    err_console.print(f"[red]✗ {escape(error.rule)}[/red]: {escape(error.message)}")
    if error.details:
        err_console.print(escape(json.dumps(error.details)))


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    result = validate_graph(graph)
    if result.valid:
        console.print(
            f"[green]✓ Graph is valid[/green] "
            f"({len(graph.nodes)} nodes, {len(graph.edges)} edges)"
        )
        return 0
    _print_structural_error(
        StructuralError(result.failed_rule or "invalid", result.message, result.details)
    )
    return 1


def cmd_compile(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    config = EngineConfig(unresolved_references=args.unresolved) if args.unresolved else None
    try:
        plan = compile_graph(graph, schema_lookup=_load_schemas(args.schemas), config=config)
    except StructuralError as e:
        _print_structural_error(e)
        return 1
    except UnresolvedReferenceError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        return 1

    for warning in plan.warnings:
        err_console.print(f"[yellow]⚠ {warning.code}[/yellow] {escape(warning.message)}")

    if args.output:
        Path(args.output).write_text(plan.to_json(), encoding="utf-8")
        console.print(
            f"[green]✓ Compiled {len(plan.steps)} steps[/green] → {escape(args.output)}"
        )
    else:
        console.print_json(plan.to_json())
    return 0


def cmd_vars(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    if graph.get_node(args.node_id) is None:
        raise CLIError(f"Node '{args.node_id}' not found")

    resolver = VariableVisibilityResolver(_load_schemas(args.schemas))
    bindings = resolver.available_vars(graph, args.node_id)

    table = Table(title=f"Variables available to {args.node_id}")
    table.add_column("Variable")
    table.add_column("From node")
    table.add_column("Label")
    for binding in bindings:
        table.add_row(
            escape(binding.path), escape(binding.from_node_id), escape(binding.from_label)
        )
    console.print(table)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    input_data = _parse_input(args.input) if args.input else {}
    seed = _read_json(args.seed, "Seed") if args.seed else {}

    collections = MemoryCollections(seed=seed)
    declared = _load_schemas(args.schemas)
    schema_lookup: SchemaLookup = declared if declared is not None else collections

    try:
        plan = compile_graph(graph, schema_lookup=schema_lookup)
    except StructuralError as e:
        _print_structural_error(e)
        return 1
    except UnresolvedReferenceError as e:
        raise CLIError(str(e)) from e

    bus = EventBus()

    async def echo(event: WorkflowEvent) -> None:
        step = f" {event.step_index}:{event.step_id}" if event.step_id else ""
        detail = event.data.get("reason") or event.data.get("preview") or ""
        console.print(f"[dim]{event.type.value}[/dim]{escape(step)} {escape(str(detail))}")

    bus.subscribe(event_types=list(EventType), handler=echo)
    engine = ExecutionEngine(default_registry(collections), event_sink=bus)
    result = asyncio.run(engine.execute(plan, input_data=input_data))

    console.print_json(json.dumps(result.to_dict(), default=str))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepflow",
        description="stepflow - validate, compile and run workflow graphs",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from config)")
    parser.add_argument(
        "--log-format",
        choices=["auto", "json", "human"],
        default=None,
        help="Log output format (default from config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Check a graph's structure")
    validate_parser.add_argument("graph", help="Path to graph JSON")
    validate_parser.set_defaults(func=cmd_validate)

    compile_parser = subparsers.add_parser("compile", help="Compile a graph into a plan")
    compile_parser.add_argument("graph", help="Path to graph JSON")
    compile_parser.add_argument("--schemas", help="JSON mapping collection -> field names")
    compile_parser.add_argument("-o", "--output", help="Write the plan here instead of stdout")
    compile_parser.add_argument(
        "--unresolved",
        choices=["warn", "ignore", "error"],
        default=None,
        help="Policy for unresolved template references",
    )
    compile_parser.set_defaults(func=cmd_compile)

    vars_parser = subparsers.add_parser("vars", help="List variables available to a node")
    vars_parser.add_argument("graph", help="Path to graph JSON")
    vars_parser.add_argument("node_id", help="Node to inspect")
    vars_parser.add_argument("--schemas", help="JSON mapping collection -> field names")
    vars_parser.set_defaults(func=cmd_vars)

    run_parser = subparsers.add_parser("run", help="Compile and run with in-memory handlers")
    run_parser.add_argument("graph", help="Path to graph JSON")
    run_parser.add_argument("--input", help="Input variables as a JSON object")
    run_parser.add_argument("--seed", help="JSON mapping collection -> records")
    run_parser.add_argument("--schemas", help="JSON mapping collection -> field names")
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(
        level=args.log_level or get_log_level(),
        format=args.log_format or get_log_format(),
    )
    try:
        return args.func(args)
    except CLIError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
