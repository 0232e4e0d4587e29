"""CLI entry point for smsledger.

Commands:
    smsledger import [--file PATH]   Import one SMS export or all in the watch dir
    smsledger parse TEXT             Parse a single SMS and print the candidate
    smsledger watch                  Start the drop-folder watcher daemon
    smsledger status                 Ledger and connection counts
    smsledger review                 List SMS transactions pending review
    smsledger approve ID             Approve a pending SMS transaction
    smsledger serve                  Run the HTTP API
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "local"


def _setup_logging() -> None:
    """Configure logging based on SMSLEDGER_LOG_LEVEL env var."""
    level = os.environ.get("SMSLEDGER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from smsledger.config import Config

    config_dir = os.environ.get("SMSLEDGER_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database."""
    from smsledger.database.repository import Repository

    db_path = os.environ.get("SMSLEDGER_DB_PATH", "smsledger.db")
    return Repository(db_path=db_path)


def _get_watch_dir() -> Path:
    return Path(os.environ.get("SMSLEDGER_WATCH_DIR", "import"))


def _get_migrations_dir() -> Path:
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("SMSLEDGER_MIGRATIONS_DIR", default))


def _get_user_id(args: argparse.Namespace) -> str:
    return (
        getattr(args, "user", None)
        or os.environ.get("SMSLEDGER_USER_ID")
        or DEFAULT_USER_ID
    )


def _get_importer(args: argparse.Namespace, config, repo):
    """FileImporter wired with CLI flags over config defaults."""
    from smsledger.ingest.pipeline import ImportPipeline
    from smsledger.parsers.sms_parser import SmsParser
    from smsledger.watcher.observer import FileImporter

    defaults = config.import_defaults
    min_confidence = getattr(args, "min_confidence", None)
    auto_approve = getattr(args, "auto_approve", False) or defaults["auto_approve"]

    pipeline = ImportPipeline(
        repo, SmsParser(config), payment_method=config.payment_method,
    )
    return FileImporter(
        repo=repo,
        pipeline=pipeline,
        user_id=_get_user_id(args),
        min_confidence=(
            min_confidence if min_confidence is not None
            else defaults["min_confidence"]
        ),
        auto_approve=bool(auto_approve),
        chunk_size=int(defaults["max_messages"]),
    )


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Import SMS export file(s) via the FileImporter."""
    from smsledger.watcher.observer import SUPPORTED_EXTENSIONS

    config = _get_config()
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    importer = _get_importer(args, config, repo)

    try:
        if args.file:
            filepath = args.file.resolve()
            if not filepath.exists():
                print(f"Error: File not found: {filepath}")
                return 1
            if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
                print(f"Error: Unsupported file type: {filepath.suffix}")
                return 1

            result = importer.process_file(filepath)
            print(
                f"{result.file_name}: {result.status}"
                f" (messages={result.message_count}, imported={result.imported_count},"
                f" pending={result.pending_count}, dup={result.duplicate_count})"
            )
            return 0 if result.status != "error" else 1

        watch_dir = _get_watch_dir()
        if not watch_dir.exists():
            print(f"Watch directory not found: {watch_dir}")
            return 1

        files = [
            f for f in sorted(watch_dir.iterdir())
            if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
        ]
        if not files:
            print("No pending files found.")
            return 0

        total_imported = 0
        total_dup = 0
        errors = 0
        for filepath in files:
            result = importer.process_file(filepath)
            print(
                f"  {result.file_name}: {result.status}"
                f" (imported={result.imported_count}, dup={result.duplicate_count})"
            )
            total_imported += result.imported_count
            total_dup += result.duplicate_count
            if result.status == "error":
                errors += 1

        print(
            f"\nProcessed {len(files)} files: {total_imported} imported,"
            f" {total_dup} duplicates, {errors} errors"
        )
        return 1 if errors else 0
    finally:
        repo.close()


def cmd_parse(args: argparse.Namespace) -> int:
    """Parse one SMS body and print the candidate as JSON."""
    from smsledger.parsers.sms_parser import SmsParser

    parser = SmsParser(_get_config())
    candidate = parser.parse(args.text)
    if candidate is None:
        print("No transaction found in message.")
        return 1
    print(json.dumps(candidate.to_dict(), indent=2, ensure_ascii=False))
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the file watcher daemon."""
    from smsledger.watcher.observer import FileWatcher

    config = _get_config()
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())

    watcher = FileWatcher(
        watch_dir=_get_watch_dir(),
        importer=_get_importer(args, config, repo),
    )

    print(f"Watching {watcher.watch_dir} for SMS exports... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts."""
    from smsledger.database.queries import get_status_counts

    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    counts = get_status_counts(repo.conn, getattr(args, "user", None))

    print("smsledger Status")
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  SMS imported:        {counts['sms_imported']:,}")
    print(f"  SMS pending review:  {counts['sms_pending']:,}")
    print(f"  Manual:              {counts['manual']:,}")
    print(f"  Total imports:       {counts['total_imports']:,}")
    print(
        f"  SMS connections:     {counts['active_connections']:,} active"
        f" / {counts['total_connections']:,} total"
    )

    repo.close()
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List SMS transactions pending manual approval."""
    from smsledger.database.models import SOURCE_SMS_PENDING

    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())

    txns = repo.get_transactions_by_source(
        _get_user_id(args), SOURCE_SMS_PENDING, limit=50,
    )
    if not txns:
        print("No transactions pending review.")
        repo.close()
        return 0

    print(f"Transactions pending review ({len(txns)}):")
    print("-" * 80)
    for t in txns:
        conf = f"{t.confidence:.0%}" if t.confidence is not None else "n/a"
        print(
            f"  {t.id[:8]}  {t.date[:10]}  {t.amount:>10.2f}  {t.type:<8}"
            f"  {t.title[:30]:<30}  {conf}"
        )

    repo.close()
    return 0


def cmd_approve(args: argparse.Namespace) -> int:
    """Flip one pending SMS transaction into the ledger."""
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    try:
        if repo.approve_pending_transaction(_get_user_id(args), args.id):
            print(f"Approved {args.id}.")
            return 0
        print(f"Error: No pending transaction {args.id}.")
        return 1
    finally:
        repo.close()


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    from smsledger.api import TokenVerifier, create_app

    tokens = TokenVerifier.from_string(os.environ.get("SMSLEDGER_API_TOKENS"))
    webhook_api_key = os.environ.get("SMSLEDGER_WEBHOOK_API_KEY") or None
    if webhook_api_key is None:
        logger.warning("SMSLEDGER_WEBHOOK_API_KEY not set, webhook accepts all requests")

    config = _get_config()
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())

    app = create_app(
        repo, config, tokens,
        base_url=os.environ.get(
            "SMSLEDGER_BASE_URL", f"http://{args.host}:{args.port}"
        ),
        webhook_api_key=webhook_api_key,
    )
    try:
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        repo.close()
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "import": cmd_import,
    "parse": cmd_parse,
    "watch": cmd_watch,
    "status": cmd_status,
    "review": cmd_review,
    "approve": cmd_approve,
    "serve": cmd_serve,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="smsledger",
        description="smsledger bank SMS transaction importer",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Import SMS export file(s)")
    import_p.add_argument("--file", type=Path, help="Specific file to import")
    import_p.add_argument("--user", help="Ledger user id")
    import_p.add_argument(
        "--auto-approve", action="store_true",
        help="Write high-confidence transactions straight to the ledger",
    )
    import_p.add_argument(
        "--min-confidence", type=float,
        help="Drop candidates below this confidence (0-1)",
    )

    # parse
    parse_p = subparsers.add_parser("parse", help="Parse a single SMS")
    parse_p.add_argument("text", help="SMS body")

    # watch
    watch_p = subparsers.add_parser("watch", help="Start file watcher daemon")
    watch_p.add_argument("--user", help="Ledger user id")
    watch_p.add_argument("--auto-approve", action="store_true")
    watch_p.add_argument("--min-confidence", type=float)

    # status
    status_p = subparsers.add_parser("status", help="Show ledger and connection counts")
    status_p.add_argument("--user", help="Restrict counts to one user")

    # review
    review_p = subparsers.add_parser("review", help="List SMS transactions pending review")
    review_p.add_argument("--user", help="Ledger user id")

    # approve
    approve_p = subparsers.add_parser("approve", help="Approve a pending SMS transaction")
    approve_p.add_argument("id", help="Transaction ID")
    approve_p.add_argument("--user", help="Ledger user id")

    # serve
    serve_p = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
