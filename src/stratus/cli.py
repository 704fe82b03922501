"""CLI entry point for stratus."""

import argparse
import asyncio
import json
import logging
import re
import sys
from pathlib import Path

from stratus.client import Client
from stratus.config import StratusConfig, load_config
from stratus.errors import S3Error
from stratus.logging_config import configure_logging
from stratus.models import CopyDestination, CopySource, SelectRequest

logger = logging.getLogger("stratus")

_RANGE_SUFFIX = re.compile(r"^(?P<path>.+):(?P<start>\d+)-(?P<end>\d+)$")


def parse_object_path(value: str, allow_range: bool = False) -> CopySource:
    """Parse ``bucket/key`` (optionally ``bucket/key:start-end``).

    Raises:
        argparse.ArgumentTypeError: If the value has no key part.
    """
    start = end = None
    if allow_range:
        match = _RANGE_SUFFIX.match(value)
        if match:
            value = match.group("path")
            start, end = int(match.group("start")), int(match.group("end"))

    bucket, sep, key = value.partition("/")
    if not sep or not bucket or not key:
        raise argparse.ArgumentTypeError(f"expected BUCKET/KEY, got {value!r}")
    return CopySource(bucket=bucket, key=key, start=start, end=end)


def _source_arg(value: str) -> CopySource:
    return parse_object_path(value, allow_range=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="stratus",
        description="stratus - server-side compose and S3 Select from the command line",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: built-in defaults)",
    )
    parser.add_argument(
        "--endpoint",
        type=str,
        default=None,
        help="Service URL (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    compose = commands.add_parser(
        "compose",
        help="Concatenate objects server-side",
        description="Create DEST from SRC objects. A source may select a byte "
        "range with a ':START-END' suffix (inclusive).",
    )
    compose.add_argument("destination", type=parse_object_path, metavar="DEST")
    compose.add_argument("sources", type=_source_arg, nargs="+", metavar="SRC")

    select = commands.add_parser(
        "select",
        help="Run an S3 Select SQL expression over a CSV object",
    )
    select.add_argument("bucket")
    select.add_argument("key")
    select.add_argument("expression")
    select.add_argument(
        "--file-header",
        choices=["USE", "IGNORE", "NONE"],
        default="USE",
        help="How the first CSV line is treated (default: USE)",
    )
    select.add_argument(
        "--compression",
        choices=["NONE", "GZIP", "BZIP2"],
        default="NONE",
        help="Compression of the input object (default: NONE)",
    )

    return parser.parse_args(argv)


async def _compose(client: Client, args: argparse.Namespace) -> int:
    source: CopySource = args.destination
    destination = CopyDestination(bucket=source.bucket, key=source.key)
    result = await client.compose_object(destination, args.sources)
    print(
        json.dumps(
            {
                "bucket": result.bucket,
                "key": result.key,
                "etag": result.etag,
                "version_id": result.version_id,
                "size": result.size,
            }
        )
    )
    return 0


async def _select(client: Client, args: argparse.Namespace) -> int:
    request = SelectRequest(
        expression=args.expression,
        input_serialization={
            "CompressionType": args.compression,
            "CSV": {"FileHeaderInfo": args.file_header},
        },
        output_serialization={"CSV": {}},
        request_progress=True,
    )
    results = await client.select_object_content(args.bucket, args.key, request)
    sys.stdout.buffer.write(results.records)
    sys.stdout.buffer.flush()
    if results.stats_counters:
        logger.info(
            "Scanned %d bytes, processed %d bytes, returned %d bytes",
            results.stats_counters.get("BytesScanned", 0),
            results.stats_counters.get("BytesProcessed", 0),
            results.stats_counters.get("BytesReturned", 0),
        )
    return 0


async def run(config: StratusConfig, args: argparse.Namespace) -> int:
    """Execute the selected sub-command against the configured endpoint."""
    async with Client.from_config(config) as client:
        if args.command == "compose":
            return await _compose(client, args)
        return await _select(client, args)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the stratus CLI.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    if args.config is None:
        config = StratusConfig()
    else:
        try:
            config = load_config(args.config)
        except FileNotFoundError:
            logger.error("Config file not found: %s", args.config)
            sys.exit(1)
        except Exception as exc:
            logger.error("Failed to load config: %s", exc)
            sys.exit(1)

    # Apply CLI overrides
    if args.endpoint is not None:
        config.endpoint.url = args.endpoint
    if args.log_level is not None:
        config.logging.level = args.log_level
    if args.log_format is not None:
        config.logging.format = args.log_format

    configure_logging(level=config.logging.level, fmt=config.logging.format)

    try:
        code = asyncio.run(run(config, args))
    except S3Error as exc:
        logger.error("%s failed: %s", args.command, exc)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
