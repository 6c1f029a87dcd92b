"""Command-line entry points for the sales backend.

The CLI is limited to argparse wiring and translating command-line arguments
into calls on the runtime context. Each sub-command is described by a
:class:`CommandSpec` so that tests can build the parser and the dispatch table
without touching a database.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TypeVar

from . import log, runtime
from .errors import AppError
from .export import export_bills
from .sales import SaleLineRequest, SaleRequest
from .settings import load_settings
from .store import Database


T = TypeVar("T")


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sales-erp",
        description="Command-line tools for the Sales ERP backend.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        register_init_db_command(),
        register_serve_command(),
        register_sale_command(),
        register_export_bills_command(),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_init_db_command() -> CommandSpec:
    """Register the parser and executor for ``init-db``."""
    name = "init-db"
    help_text = "Create the database schema and the receipt directory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init_db)


def register_serve_command() -> CommandSpec:
    """Register the parser and executor for ``serve``."""
    name = "serve"
    help_text = "Run the HTTP API."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--host", default="127.0.0.1")
        parser.add_argument("--port", type=int, default=8000)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_serve)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Process a sale for an existing customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            metavar="PRODUCT_ID:QUANTITY:SALE_PRICE",
            help="Sale line; repeat for several products.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_export_bills_command() -> CommandSpec:
    """Register the parser and executor for ``export-bills``."""
    name = "export-bills"
    help_text = "Export every bill and its lines to an Excel workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.add_argument("--overwrite", action="store_true", help="Replace an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_bills)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def dispatch_command(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(args)


def parse_sale_line(raw: str) -> SaleLineRequest:
    """Parse ``PRODUCT_ID:QUANTITY:SALE_PRICE`` into a :class:`SaleLineRequest`.

    Raises:
        ValueError: If the value does not have three parts or a part is not
            numeric.
    """
    parts = raw.split(":")
    if len(parts) != 3:
        raise ValueError(f"Sale line must look like PRODUCT_ID:QUANTITY:SALE_PRICE, got {raw!r}")
    try:
        return SaleLineRequest(product_id=int(parts[0]), quantity=int(parts[1]), sale_price=Decimal(parts[2]))
    except (ValueError, InvalidOperation) as exc:
        raise ValueError(f"Invalid sale line {raw!r}: {exc}") from exc


def translate_sale(args: argparse.Namespace) -> SaleRequest:
    """Translate CLI args into a sale request."""
    return SaleRequest(
        customer_id=args.customer_id,
        lines=tuple(parse_sale_line(raw) for raw in args.lines),
    )


async def _with_runtime(
    config_path: Optional[Path],
    operation: Callable[[runtime.RuntimeContext], Awaitable[T]],
) -> T:
    context = await runtime.load_runtime_context(config_path)
    try:
        return await operation(context)
    finally:
        await context.close()


def run_init_db(args: argparse.Namespace) -> int:
    """Create tables in the configured database."""
    settings = load_settings(getattr(args, "config", None))

    async def initialize() -> None:
        database = Database.from_url(settings.database_url)
        try:
            await database.create_schema()
        finally:
            await database.dispose()

    asyncio.run(initialize())
    settings.receipt_directory.mkdir(parents=True, exist_ok=True)
    print(f"Database initialized, receipts will be stored in {settings.receipt_directory}")
    return 0


def run_serve(args: argparse.Namespace) -> int:
    """Serve the API with uvicorn until interrupted."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config_path=getattr(args, "config", None)), host=args.host, port=args.port)
    return 0


def run_sale(args: argparse.Namespace) -> int:
    """Execute the sale workflow and report the resulting bill."""
    request = translate_sale(args)
    result = asyncio.run(_with_runtime(getattr(args, "config", None), lambda context: context.sales.process_sale(request)))
    print(f"Bill {result.bill.id} recorded, total {result.bill.total_amount}")
    for warning in result.warnings:
        print(f"Warning ({warning.step}): {warning.message}")
    return 0


def run_export_bills(args: argparse.Namespace) -> int:
    """Export bills straight from the store into a workbook."""

    async def collect(context: runtime.RuntimeContext) -> Any:
        bills = await context.bills.store.find_all()
        customers = {customer.id: customer for customer in await context.customers.store.find_all()}
        return bills, customers

    bills, customers = asyncio.run(_with_runtime(getattr(args, "config", None), collect))
    destination = export_bills(bills, customers, args.output, overwrite=args.overwrite)
    print(f"Exported {len(bills)} bill(s) to {destination}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, AppError):
        log.error("%s", error.message)
        return 2
    if isinstance(error, (FileNotFoundError, FileExistsError, KeyError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        return dispatch_command(args, command_table)
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
