"""CLI entry point: python main.py report --user u1 --year 2024"""

import argparse
import json
import sys
from datetime import date

from src.logging_config import configure_logging
from src.tax_lots import TaxLotError, TaxLotService
from src.tax_lots.sql_store import SqlLedgerStore


def parse_price(value: str) -> tuple[str, float]:
    """Parse a ``SYMBOL=PRICE`` argument."""
    symbol, sep, price = value.partition("=")
    if not sep or not symbol:
        raise argparse.ArgumentTypeError(f"expected SYMBOL=PRICE, got {value!r}")
    try:
        return symbol.strip().upper(), float(price)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid price in {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tax-lot ledger - capital gains, wash sales and loss harvesting"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the ledger tables")

    report = sub.add_parser("report", help="Build the annual tax report")
    report.add_argument("--user", required=True, help="User id")
    report.add_argument("--year", type=int, default=date.today().year, help="Tax year")

    lots = sub.add_parser("lots", help="List tax lots")
    lots.add_argument("--user", required=True, help="User id")
    lots.add_argument("--symbol", default=None, help="Only this symbol")
    lots.add_argument("--year", type=int, default=None, help="Disposed in this year, or open")
    lots.add_argument("--closed", action="store_true", help="Include closed lots")

    harvest = sub.add_parser("harvest", help="Find tax-loss harvesting opportunities")
    harvest.add_argument("--user", required=True, help="User id")
    harvest.add_argument(
        "--price", type=parse_price, action="append", default=[], metavar="SYMBOL=PRICE",
        help="Current price (repeatable)",
    )
    harvest.add_argument("--threshold", type=float, default=None, help="Minimum loss percent")
    harvest.add_argument("--min-amount", type=float, default=None, help="Minimum loss in USD")
    harvest.add_argument(
        "--as-of", type=date.fromisoformat, default=None, help="Evaluation date (YYYY-MM-DD)"
    )
    return parser


def run(args: argparse.Namespace, service: TaxLotService) -> object:
    """Execute a parsed command and return a JSON-ready result."""
    if args.command == "report":
        return service.build_report(args.user, args.year).to_dict()
    if args.command == "lots":
        lots = service.list_lots(
            args.user, include_closed=args.closed, symbol=args.symbol, tax_year=args.year,
        )
        return [lot.to_dict() for lot in lots]
    if args.command == "harvest":
        opportunities = service.find_opportunities(
            args.user,
            dict(args.price),
            threshold_percent=args.threshold,
            min_amount=args.min_amount,
            as_of=args.as_of,
        )
        return [o.to_dict() for o in opportunities]
    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(stream=sys.stderr)

    if args.command == "init-db":
        SqlLedgerStore.create_schema()
        print(json.dumps({"status": "ok"}))
        return 0

    service = TaxLotService(store=SqlLedgerStore())
    try:
        result = run(args, service)
    except TaxLotError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
