from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, TypeVar

import websocket

from .charts import render_dial_time_chart
from .config import (
    DEFAULT_DURATION,
    DEFAULT_LIFETIME_MS,
    DEFAULT_MESSAGE_INTERVAL_MS,
    DEFAULT_TOPIC,
    DEFAULT_URL,
    DEFAULT_VSN,
    DEFAULT_VUS,
    ConfigError,
    ConnectionConfig,
    LoadOptions,
    format_duration,
    parse_duration,
)
from .metrics import MetricSink
from .report import build_summary, export_samples, export_summary, format_summary
from .scheduler import LoadScheduler
from .session import Connector

LOGGER = logging.getLogger("phxload")
FILE_HANDLER_NAME = "phxload-file"

T = TypeVar("T")


@dataclass(frozen=True)
class RunSettings:
    options: LoadOptions
    config: ConnectionConfig
    output_dir: Path | None = None
    log_level: str = "INFO"
    log_path: Path | None = None


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError(f"expected a positive integer, got {raw!r}")
    return value


def _cli(parser: Callable[[str], T]) -> Callable[[str], T]:
    def convert(raw: str) -> T:
        try:
            return parser(raw)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc

    convert.__name__ = parser.__name__
    return convert


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Phoenix channel WebSocket load test")
    parser.add_argument("--vus", type=_cli(_positive_int), help="Number of concurrent virtual users")
    parser.add_argument(
        "--duration",
        type=_cli(parse_duration),
        help="Total run length, e.g. 30s, 1m30s, 500ms",
    )
    parser.add_argument("--url", help="Base WebSocket endpoint")
    parser.add_argument("--vsn", help="Protocol version sent as the vsn query parameter")
    parser.add_argument(
        "--msg-interval-ms",
        type=_cli(_positive_int),
        help="Milliseconds between pings on each connection",
    )
    parser.add_argument(
        "--lifetime-ms",
        type=_cli(_positive_int),
        help="Milliseconds before each connection closes itself",
    )
    parser.add_argument("--topic", help="Channel topic joined by every connection")
    parser.add_argument(
        "--output-dir",
        help="Directory for summary.json, samples.csv and the dial time chart",
    )
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--log-path", help="Optional log file in addition to the console")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the resolved settings without connecting",
    )
    return parser.parse_args(argv)


def _from_env(
    env: Mapping[str, str],
    name: str,
    default: T,
    parser: Callable[[str], T],
) -> T:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return parser(raw)
    except ValueError:
        print(f"invalid {name} value {raw!r}; defaulting to {default}", file=sys.stderr)
        return default


def resolve_settings(args: argparse.Namespace, env: Mapping[str, str]) -> RunSettings:
    vus = args.vus
    if vus is None:
        vus = _from_env(env, "VUS", DEFAULT_VUS, _positive_int)

    duration_s = args.duration
    if duration_s is None:
        duration_s = _from_env(env, "DURATION", parse_duration(DEFAULT_DURATION), parse_duration)

    interval_ms = args.msg_interval_ms
    if interval_ms is None:
        interval_ms = _from_env(env, "MSG_INTERVAL_MS", DEFAULT_MESSAGE_INTERVAL_MS, _positive_int)

    lifetime_ms = args.lifetime_ms
    if lifetime_ms is None:
        lifetime_ms = _from_env(env, "LIFETIME_MS", DEFAULT_LIFETIME_MS, _positive_int)

    output_dir_value = args.output_dir or env.get("PHXLOAD_OUTPUT_DIR")
    log_path_value = args.log_path or env.get("PHXLOAD_LOG_PATH")

    return RunSettings(
        options=LoadOptions(vus=vus, duration_s=duration_s),
        config=ConnectionConfig(
            base_url=args.url or env.get("URL") or DEFAULT_URL,
            vsn=args.vsn or env.get("VSN") or DEFAULT_VSN,
            message_interval_ms=interval_ms,
            lifetime_ms=lifetime_ms,
            topic=args.topic or env.get("TOPIC") or DEFAULT_TOPIC,
        ),
        output_dir=Path(output_dir_value) if output_dir_value else None,
        log_level=args.log_level or env.get("PHXLOAD_LOG_LEVEL", "INFO"),
        log_path=Path(log_path_value) if log_path_value else None,
    )


def configure_logging(level: str, log_path: Path | None = None) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=log_level, format=formatter_fmt)
    root = logging.getLogger()
    root.setLevel(log_level)

    # one log file per process; a later run replaces it
    for handler in list(root.handlers):
        if handler.get_name() == FILE_HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        handler.set_name(FILE_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(formatter_fmt))
        root.addHandler(handler)


def run(argv: list[str] | None = None, connector: Connector = websocket.create_connection) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        settings = resolve_settings(args, os.environ)
    except ConfigError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level, settings.log_path)

    if args.dry_run:
        _print_settings(settings)
        return 0

    sink = MetricSink()
    scheduler = LoadScheduler(settings.options, settings.config, sink, connector=connector)
    try:
        stats = scheduler.run()
    except Exception:  # noqa: BLE001
        LOGGER.exception("load test aborted")
        return 1

    summary = build_summary(sink, stats)
    print(format_summary(summary))

    if settings.output_dir is not None:
        output_dir = settings.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        export_summary(summary, output_dir / "summary.json")
        export_samples(sink, output_dir / "samples.csv")
        render_dial_time_chart(sink.build_dataframe(), output_dir / "ws_dial_time_ms.png")

    return 0


def _print_settings(settings: RunSettings) -> None:
    options = settings.options
    config = settings.config
    print(f"VUs: {options.vus}, duration: {format_duration(options.duration_s)}")
    print(f"  url: {config.url_for(1)} (VU 1)")
    print(f"  topic: {config.topic}")
    print(f"  message interval: {config.message_interval_ms}ms")
    print(f"  connection lifetime: {config.lifetime_ms}ms")
    print(f"  output dir: {settings.output_dir or '<none>'}")


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
