"""Command-line interface for deckfill."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"deckfill {__version__}\n"
        "Usage:\n"
        "  deckfill [--help] [--version|--ver]\n"
        "  deckfill --template DECK.html --data DATA.json --output OUT.html [options]\n\n"
        "Options:\n"
        "  --config PATH                 JSON config (items_per_page_ceiling, max_pages_from_template, register_globals)\n"
        "  --max-pages N                 Maximum slides generated from one template slide (default: 100)\n"
        "  --items-per-page-ceiling N    Upper bound for items on one slide (default: 100)\n"
        "  --no-globals                  Do not register Today/Now/Year/Month/Day\n"
        "  --report PATH                 Write a JSON report of the generated slides\n"
        "  --force                       Overwrite an existing output file\n"
        "  --verbose                     Verbose progress logs\n"
        "  --debug                       Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--template", help="HTML slide deck used as template")
    parser.add_argument("--data", help="JSON file with collections and variables")
    parser.add_argument("--output", help="Output HTML slide deck")
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Maximum number of slides generated from a single template slide (default: 100)",
    )
    parser.add_argument(
        "--items-per-page-ceiling",
        type=int,
        default=None,
        help="Upper bound for the items-per-slide inferred from the highest index (default: 100)",
    )
    parser.add_argument("--no-globals", action="store_true", help="Do not register date global variables")
    parser.add_argument("--report", help="Write a JSON report of the generated slides")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing output file")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def _validate_numeric_args(args: argparse.Namespace) -> str | None:
    if args.max_pages is not None and args.max_pages <= 0:
        return "Invalid value for --max-pages: must be > 0"
    if args.items_per_page_ceiling is not None and args.items_per_page_ceiling <= 0:
        return "Invalid value for --items-per-page-ceiling: must be > 0"
    return None


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    numeric_error = _validate_numeric_args(args)
    if numeric_error:
        print(numeric_error, file=sys.stderr)
        return 6

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    if not args.template or not args.data or not args.output:
        print(_get_usage())
        print("Options --template, --data and --output are required", file=sys.stderr)
        return 6

    template_path = Path(args.template).expanduser().resolve()
    data_path = Path(args.data).expanduser().resolve()
    output_path = Path(args.output).expanduser().resolve()

    if not template_path.exists() or not template_path.is_file():
        print(f"Template deck not found: {template_path}", file=sys.stderr)
        return 6
    if not data_path.exists() or not data_path.is_file():
        print(f"Data file not found: {data_path}", file=sys.stderr)
        return 6
    if output_path.exists():
        if output_path.is_dir():
            print(f"Output path is a directory: {output_path}", file=sys.stderr)
            return 7
        if not args.force:
            print(f"Output file already exists (use --force to overwrite): {output_path}", file=sys.stderr)
            return 7

    try:
        from deckfill import core
    except Exception as exc:
        print(f"Unable to import deckfill core: {exc}", file=sys.stderr)
        return 6

    core.setup_logging(args.verbose, args.debug)

    overrides = {}
    if args.config:
        config_path = Path(args.config).expanduser().resolve()
        if not config_path.exists() or not config_path.is_file():
            print(f"Config file not found: {config_path}", file=sys.stderr)
            return 6
        try:
            overrides = core.load_config_file(config_path)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 6

    config = core.BindingConfig(
        items_per_page_ceiling=int(
            args.items_per_page_ceiling
            or overrides.get("items_per_page_ceiling", core.DEFAULT_ITEMS_PER_PAGE_CEILING)
        ),
        max_pages_from_template=int(
            args.max_pages or overrides.get("max_pages_from_template", core.DEFAULT_MAX_PAGES_FROM_TEMPLATE)
        ),
        register_globals=bool(overrides.get("register_globals", True)) and not args.no_globals,
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    report_path = Path(args.report).expanduser().resolve() if args.report else None

    try:
        report = core.run_pipeline(
            template_path=template_path,
            data_path=data_path,
            output_path=output_path,
            config=config,
            report_path=report_path,
        )
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 6

    if report.partial:
        print("Some template slides were only partially generated", file=sys.stderr)
        return core.EXIT_PARTIAL
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
