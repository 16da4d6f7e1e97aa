import argparse
import json
import signal
from typing import Optional

from . import config
from .channel import JobChannelClient, ensure_collection
from .errors import BadInputError, StoreError
from .jobs import Job
from .maintenance import MaintenanceScheduler, flush_collection
from .media_api import decompress_hash
from .pipeline import load_document


def _settings(args: argparse.Namespace) -> config.WorkerSettings:
    return config.WorkerSettings(
        api=config.api, store=config.store, load=config.loader, log_level=args.log_level
    )


def cmd_worker(args: argparse.Namespace) -> None:
    settings = _settings(args)
    print(f"Dispatcher: {settings.api.channel_url}")
    print(f"Store: {settings.store.backend} / collection {settings.store.collection} (dim {settings.store.dim})")

    scheduler = None
    if config.maintenance.enabled and not args.no_maintenance:
        scheduler = MaintenanceScheduler(settings.store, at=config.maintenance.at)
        scheduler.start()

    client = JobChannelClient(settings)
    signal.signal(signal.SIGTERM, lambda *_: client.stop())
    try:
        client.run_forever()
    except KeyboardInterrupt:
        client.stop()
    finally:
        if scheduler is not None:
            scheduler.stop()
    print("Worker stopped.")


def cmd_load_file(args: argparse.Namespace) -> None:
    settings = _settings(args)
    job = Job.from_message(json.dumps({"file": args.file}))
    with open(args.path, "rb") as f:
        payload = f.read()
    document = decompress_hash(payload) if args.path.endswith(".xz") else payload

    print(f"Hash document: {args.path}")
    print(f"Target: {settings.store.backend} / {settings.store.collection} as {job.file}")
    try:
        if args.create:
            ensure_collection(settings)
        report = load_document(job, document, settings)
    except BadInputError as e:
        raise SystemExit(f"Rejected: {e}")
    except StoreError as e:
        raise SystemExit(f"Store error: {e}")
    print(
        f"Loaded {report.records} records in {report.batches} batch(es) "
        f"(insert {report.insert_sec:.2f}s, flush {report.flush_sec:.2f}s, index {report.index_sec:.2f}s)"
    )


def cmd_flush(args: argparse.Namespace) -> None:
    if not flush_collection(config.store):
        raise SystemExit(1)
    print(f"Flushed {config.store.collection}.")


def cmd_maintenance(args: argparse.Namespace) -> None:
    at = args.at or config.maintenance.at
    scheduler = MaintenanceScheduler(config.store, at=at)
    scheduler.start()
    print(f"Flushing {config.store.collection} daily at {at}. Ctrl-C to stop.")
    try:
        scheduler.join()
    except KeyboardInterrupt:
        scheduler.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Frame hash load worker")
    parser.add_argument(
        "--log-level",
        type=str,
        default=config.WorkerSettings().log_level,
        help="Logging level (default: LOG_LEVEL env or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # worker
    p_worker = subparsers.add_parser(
        "worker", help="Consume load jobs from the dispatcher until stopped"
    )
    p_worker.add_argument(
        "--no-maintenance",
        action="store_true",
        help="Do not run the daily collection flush inside the worker",
    )
    p_worker.set_defaults(func=cmd_worker)

    # load-file
    p_load = subparsers.add_parser(
        "load-file", help="Load a local hash document (.xml or .xml.xz) into the store"
    )
    p_load.add_argument("path", type=str, help="Path to the hash document")
    p_load.add_argument(
        "--file",
        type=str,
        required=True,
        help="Record id prefix as <collectionID>/<fileName>",
    )
    p_load.add_argument(
        "--create",
        action="store_true",
        help="(Re)create the collection first; drops its existing vectors",
    )
    p_load.set_defaults(func=cmd_load_file)

    # flush
    p_flush = subparsers.add_parser("flush", help="Flush the configured collection once")
    p_flush.set_defaults(func=cmd_flush)

    # maintenance
    p_maint = subparsers.add_parser(
        "maintenance", help="Run only the daily flush scheduler"
    )
    p_maint.add_argument(
        "--at",
        type=str,
        default=None,
        help="Local time HH:MM (default: MAINTENANCE_AT or 03:00)",
    )
    p_maint.set_defaults(func=cmd_maintenance)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config.setup_logging(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
