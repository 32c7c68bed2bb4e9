from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .config import (
    ConfigError,
    EndpointConfig,
    RunConfig,
    load_file_defaults,
)
from .listing import ListingError, ObjectLister
from .s3 import ObjectClient, ObjectStoreError, S3ObjectClient
from .scheduler import TransferScheduler
from .summary import RunSummary, format_size, render_summary, write_failures_file
from .transfer import TransferResult, local_path_for_key

logger = logging.getLogger("s3pull")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2


def configure_logging(
    verbose: bool = False, quiet: bool = False, console: Optional[Console] = None
) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False
    # botocore logs every retry and credential lookup at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


def build_parser(
    defaults: Optional[dict[str, object]] = None,
) -> argparse.ArgumentParser:
    defaults = defaults or load_file_defaults()
    parser = argparse.ArgumentParser(
        prog="s3pull",
        description=(
            "Download every object under an S3 bucket/prefix concurrently and "
            "optionally mirror missing objects into a second bucket"
        ),
    )
    parser.add_argument("-b", "--bucket", required=True, help="Source bucket")
    parser.add_argument(
        "--prefix", default="", help="Only objects under this key prefix"
    )
    parser.add_argument("-p", "--profile", help="AWS profile for the source bucket")
    parser.add_argument("-r", "--region", help="AWS region for the source bucket")
    parser.add_argument(
        "-d",
        "--download-path",
        default=defaults["download_path"],
        help="Local directory objects are written under (default: %(default)s)",
    )
    upload = parser.add_argument_group("mirroring")
    upload.add_argument(
        "--upload-bucket",
        help="Bucket that receives objects it does not already have",
    )
    upload.add_argument(
        "--upload-prefix",
        help="Replaces --prefix in the keys written to the upload bucket",
    )
    upload.add_argument("--upload-profile", help="AWS profile for the upload bucket")
    upload.add_argument("--upload-region", help="AWS region for the upload bucket")
    tuning = parser.add_argument_group("tuning")
    tuning.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=defaults["concurrency"],
        help="Maximum simultaneous transfers (default: %(default)s)",
    )
    tuning.add_argument(
        "--max-attempts",
        type=int,
        default=defaults["max_attempts"],
        help="Attempts per object and stage before giving up (default: %(default)s)",
    )
    tuning.add_argument(
        "--connect-timeout",
        type=float,
        default=defaults["connect_timeout"],
        help="Seconds to wait for a connection (default: %(default)s)",
    )
    tuning.add_argument(
        "--read-timeout",
        type=float,
        default=defaults["read_timeout"],
        help="Seconds to wait for response data (default: %(default)s)",
    )
    parser.set_defaults(
        base_delay=defaults["base_delay"], max_delay=defaults["max_delay"]
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the objects and where they would go without transferring",
    )
    parser.add_argument(
        "--failures-file",
        type=Path,
        help="Write failed keys and reasons to this JSON file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings only")
    return parser


def _resolve_config(args: argparse.Namespace) -> RunConfig:
    destination: Optional[EndpointConfig] = None
    if args.upload_bucket:
        destination = EndpointConfig(
            bucket=args.upload_bucket,
            prefix=args.upload_prefix or "",
            profile=args.upload_profile,
            region=args.upload_region,
        )
    return RunConfig(
        source=EndpointConfig(
            bucket=args.bucket,
            prefix=args.prefix or "",
            profile=args.profile,
            region=args.region,
        ),
        download_path=Path(args.download_path).expanduser(),
        destination=destination,
        concurrency=args.concurrency,
        max_attempts=args.max_attempts,
        base_delay=args.base_delay,
        max_delay=args.max_delay,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
        dry_run=args.dry_run,
        failures_file=args.failures_file,
    )


def _make_client(endpoint: EndpointConfig, config: RunConfig) -> S3ObjectClient:
    client = S3ObjectClient(
        profile=endpoint.profile,
        region=endpoint.region,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        max_pool_connections=config.concurrency,
    )
    client.check_credentials()
    logger.info("Using %s for s3://%s", client.describe(), endpoint.bucket)
    return client


def _build_clients(
    config: RunConfig,
) -> tuple[ObjectClient, Optional[ObjectClient]]:
    source = _make_client(config.source, config)
    destination = None
    if config.destination is not None:
        destination = _make_client(config.destination, config)
    return source, destination


class _ProgressReporter:
    def __init__(self, progress: Progress, lister: ObjectLister) -> None:
        self._progress = progress
        self._lister = lister
        self._task = progress.add_task("Transferring", total=None)

    def __call__(self, result: TransferResult, summary: RunSummary) -> None:
        self._progress.update(
            self._task,
            completed=summary.total,
            total=self._lister.objects_listed or None,
            description=(
                f"ok {summary.succeeded}  skipped {summary.skipped}  "
                f"failed {summary.failed}"
            ),
        )


def _dry_run(config: RunConfig, lister: ObjectLister, console: Console) -> int:
    async def collect() -> list:
        return [info async for info in lister]

    try:
        objects = asyncio.run(collect())
    except ListingError as exc:
        logger.error("%s", exc)
        return EXIT_FATAL
    total = 0
    for info in objects:
        total += info.size
        try:
            target = str(local_path_for_key(config.download_path, info.key))
        except ObjectStoreError as exc:
            target = f"<not downloadable: {exc.reason}>"
        console.print(f"{info.key} -> {target}", markup=False, highlight=False)
    console.print(f"{len(objects)} objects, {format_size(total)}", highlight=False)
    return EXIT_OK


def run_transfer(
    config: RunConfig,
    source: ObjectClient,
    destination: Optional[ObjectClient] = None,
    console: Optional[Console] = None,
    show_progress: bool = True,
) -> int:
    console = console or Console(stderr=True)
    lister = ObjectLister(
        source,
        config.source.bucket,
        config.source.prefix,
        retry_policy=config.retry_policy(),
    )
    if config.dry_run:
        return _dry_run(config, lister, Console())

    upload_bucket: Optional[str] = None
    upload_prefix: Optional[str] = None
    if config.destination is not None:
        if destination is None:
            raise ConfigError("an upload bucket needs a destination client")
        upload_bucket = config.destination.bucket
        upload_prefix = config.destination.prefix or None
    if upload_bucket:
        logger.info(
            "Downloading s3://%s/%s to %s and mirroring into s3://%s",
            config.source.bucket,
            config.source.prefix,
            config.download_path,
            upload_bucket,
        )
    else:
        logger.info(
            "No upload bucket specified, downloading everything from s3://%s/%s to %s",
            config.source.bucket,
            config.source.prefix,
            config.download_path,
        )

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
        disable=not show_progress,
    )
    scheduler = TransferScheduler(
        source,
        config.source.bucket,
        config.download_path,
        prefix=config.source.prefix,
        concurrency=config.concurrency,
        retry_policy=config.retry_policy(),
        destination=destination if upload_bucket else None,
        upload_bucket=upload_bucket,
        upload_prefix=upload_prefix,
        on_result=_ProgressReporter(progress, lister),
    )
    exit_code = EXIT_OK
    try:
        with progress:
            summary = scheduler.run(lister)
    except ListingError:
        exit_code = EXIT_FATAL
        summary = scheduler.summary or RunSummary()
    render_summary(summary, console)
    if config.failures_file is not None:
        if write_failures_file(summary, config.failures_file):
            logger.info(
                "Wrote %d failed keys to %s", summary.failed, config.failures_file
            )
    if exit_code == EXIT_OK:
        exit_code = summary.exit_code
    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.upload_bucket and not (args.upload_profile or args.upload_region):
        parser.error("--upload-bucket requires --upload-profile or --upload-region")
    if args.verbose and args.quiet:
        parser.error("--verbose and --quiet are mutually exclusive")
    console = Console(stderr=True)
    configure_logging(args.verbose, args.quiet, console)
    try:
        config = _resolve_config(args)
        source, destination = _build_clients(config)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FATAL
    except ObjectStoreError as exc:
        logger.error("Could not set up the S3 client: %s", exc.reason)
        return EXIT_FATAL
    return run_transfer(
        config,
        source,
        destination,
        console=console,
        show_progress=not args.quiet and console.is_terminal,
    )


if __name__ == "__main__":
    raise SystemExit(main())
