"""outdial CLI entry point.

Usage:
    outdial run --config outdial.yaml
    outdial init [--output outdial.yaml]
    outdial beats outline.txt
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger


def cmd_run(args: argparse.Namespace) -> None:
    """Run the outdial server."""
    from outdial.config import ConfigError, load_config

    config_path = args.config
    if config_path and not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    config = load_config(config_path or None)

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level)

    logger.info(f"outdial starting with config: {config_path or '(defaults)'}")
    logger.info(
        f"Providers: asr={config.providers.asr.provider} "
        f"llm={config.providers.llm.provider} tts={config.providers.tts.provider}"
    )
    logger.info(f"Listening on: {config.server.host}:{args.port or config.server.port}")

    from outdial.server import run_server

    try:
        run_server(config, host=args.host, port=args.port)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from outdial.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nSet the credentials in .env and run: outdial run --config {output}")


def cmd_beats(args: argparse.Namespace) -> None:
    """Show how an outline file splits into beats."""
    path = Path(args.outline)
    if not path.exists():
        logger.error(f"Outline file not found: {path}")
        sys.exit(1)

    from outdial.pipeline.script import parse_beats

    beats = parse_beats(path.read_text())
    if not beats:
        print("No beats found.")
        return
    for number, beat in enumerate(beats, start=1):
        marker = "spoken" if number == 1 else "prompt"
        print(f"  {number:>2}. [{marker}] {beat}")
    print(f"\nTotal: {len(beats)} beats")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="outdial",
        description="outdial - Outbound AI voice calls over Twilio",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `outdial run`
    run_parser = subparsers.add_parser("run", help="Run the outdial server")
    run_parser.add_argument(
        "--config", "-c",
        default="",
        help="Path to the YAML config file (default: built-in defaults)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", type=int, default=None, help="Override the listen port")

    # `outdial init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="outdial.yaml",
        help="Output file path (default: outdial.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    # `outdial beats`
    beats_parser = subparsers.add_parser("beats", help="Print the beats parsed from an outline file")
    beats_parser.add_argument("outline", help="Path to a text file with one beat per line")

    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "init":
        cmd_init(args)
    elif args.command == "beats":
        cmd_beats(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
