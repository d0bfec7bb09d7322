"""Command line entry point.

Examples:
  # Evaluate a snippet in a named session
  python -m rbridge eval "x <- rnorm(10); summary(x)" --session scratch

  # Run the chunk at line 12 of a markdown note
  python -m rbridge run notes/analysis.md --line 12

  # Completion and signature help inside a chunk
  python -m rbridge complete notes/analysis.md --line 14 --column 6
  python -m rbridge signature notes/analysis.md --line 14 --column 9
"""

import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .app import ChunkNotFoundError, RBridgeApp
from .config import ConfigValidationError, load_config
from .errors import RBridgeError
from .evaluation.evaluator import EvaluationResult
from .language.types import CompletionCandidate, SignatureInfo

console = Console()


def parse_options(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``key=value`` strings into a chunk options mapping."""
    options: Dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise argparse.ArgumentTypeError(f"Option must be key=value: {pair!r}")
        key, value = pair.split("=", 1)
        options[key.strip()] = value.strip().strip("\"'")
    return options


def render_result(result: EvaluationResult) -> None:
    if result.result:
        console.print(Panel(Text(result.result), title="[bold]Output[/bold]", padding=(0, 1)))
    for path in result.image_paths:
        console.print(f"[cyan]plot[/cyan] {path}")
    for path in result.widget_paths:
        console.print(f"[magenta]widget[/magenta] {path}")
    if result.help_content:
        console.print(Panel(Text(result.help_content), title="[bold]Help[/bold]", padding=(0, 1)))
    if result.environment:
        table = Table(show_header=True, box=None, padding=(0, 1))
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("Size", justify="right")
        table.add_column("Value", overflow="ellipsis", no_wrap=True)
        for var in result.environment:
            table.add_row(var.name, var.type_name, f"{var.size:.0f}", var.value_preview)
        console.print(table)


def render_completions(candidates: List[CompletionCandidate]) -> None:
    if not candidates:
        console.print("[dim]No completions available.[/dim]")
        return
    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("Label", style="bold")
    table.add_column("Insert")
    table.add_column("Detail", style="dim")
    for candidate in candidates:
        table.add_row(candidate.label, candidate.insert_text, candidate.detail)
    console.print(table)


def render_signatures(signatures: List[SignatureInfo]) -> None:
    if not signatures:
        console.print("[dim]No signature help available.[/dim]")
        return
    for signature in signatures:
        console.print(f"[bold]{signature.label}[/bold]", markup=True, highlight=False)
        if signature.documentation:
            console.print(Text(signature.documentation, style="dim"))


async def run_command(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    async with RBridgeApp(config) as app:
        if args.command == "eval":
            result = await app.evaluate(
                args.session, args.code, chunk_id=args.label, options=parse_options(args.option)
            )
            render_result(result)
        elif args.command == "run":
            render_result(await app.run_chunk(args.document, args.line))
        elif args.command == "complete":
            render_completions(await app.complete(args.document, args.line, args.column))
        elif args.command == "signature":
            render_signatures(await app.signature_help(args.document, args.line, args.column))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rbridge",
        description="Evaluate R code and query the R language server from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Path to rbridge.json (default: $RBRIDGE_CONFIG or ./rbridge.json)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    eval_parser = sub.add_parser("eval", help="Evaluate R code in a session")
    eval_parser.add_argument("code", help="R code to evaluate")
    eval_parser.add_argument("--session", default="default", help="Session key (default: default)")
    eval_parser.add_argument("--label", help="Chunk label used in artifact names")
    eval_parser.add_argument(
        "--option", "-o",
        action="append",
        metavar="KEY=VALUE",
        help="Chunk option, e.g. -o output=false (repeatable)",
    )

    run_parser = sub.add_parser("run", help="Run the R chunk at a line of a markdown document")
    run_parser.add_argument("document", help="Markdown document path")
    run_parser.add_argument("--line", type=int, required=True, help="0-based line inside the chunk")

    for name, help_text in (("complete", "Completion candidates at a cursor"),
                            ("signature", "Signature help at a cursor")):
        cursor_parser = sub.add_parser(name, help=help_text)
        cursor_parser.add_argument("document", help="Markdown document path")
        cursor_parser.add_argument("--line", type=int, required=True, help="0-based cursor line")
        cursor_parser.add_argument("--column", type=int, required=True, help="0-based cursor column")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return asyncio.run(run_command(args))
    except (RBridgeError, ConfigValidationError, ChunkNotFoundError,
            FileNotFoundError, argparse.ArgumentTypeError) as exc:
        console.print(f"[red]Error:[/red] {exc}", highlight=False)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
