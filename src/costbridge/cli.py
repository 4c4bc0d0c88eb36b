import argparse
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from costbridge.config import Config
from costbridge.windows import DAY, HOUR, CostRequest

RESOLUTIONS: "dict[str, timedelta]" = {"1h": HOUR, "1d": DAY}


@dataclass
class Invocation:
    config: "Config"
    request: "CostRequest"
    metrics_textfile: "str | None" = None


def _parse_timestamp(value: "str") -> "datetime":
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_args(argv: "list[str] | None" = None) -> "Invocation":
    parser = argparse.ArgumentParser(
        prog="costbridge",
        description="Reconcile metered provider usage into priced cost line items",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help=(
            "Path to the JSON config file "
            "(default: read DD_* and OPENAI_* environment variables)"
        ),
    )
    parser.add_argument(
        "--start",
        required=True,
        type=_parse_timestamp,
        help="Start of the requested range, ISO 8601 (UTC when no offset is given)",
    )
    parser.add_argument(
        "--end",
        required=True,
        type=_parse_timestamp,
        help="End of the requested range, ISO 8601, exclusive",
    )
    parser.add_argument(
        "--resolution",
        default="1d",
        choices=sorted(RESOLUTIONS),
        help="Window resolution (default: 1d)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: from config, else info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--metrics.textfile",
        dest="metrics_textfile",
        default=None,
        help="Write Prometheus metrics to this file after the run",
    )

    args = parser.parse_args(argv)
    if args.config_path:
        config = Config.from_file(args.config_path)
    else:
        config = Config.from_env()
    if args.log_level:
        config.log_level = args.log_level
    config.log_format = args.log_format

    return Invocation(
        config=config,
        request=CostRequest(
            start=args.start,
            end=args.end,
            resolution=RESOLUTIONS[args.resolution],
        ),
        metrics_textfile=args.metrics_textfile,
    )
