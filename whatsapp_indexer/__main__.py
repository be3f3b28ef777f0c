"""
CLI for the WhatsApp indexer.
Run: python -m whatsapp_indexer {serve,import,search,status,compact} ...
"""

import argparse
import sys
from pathlib import Path

from whatsapp_indexer.config import IndexerConfig
from whatsapp_indexer.errors import IndexerError
from whatsapp_indexer.indexer import WhatsAppIndexer
from whatsapp_indexer.logging_config import setup_logging


def _resolve_export_path(path: Path) -> Path:
    """If path is a folder holding exactly one .zip, use the zip."""
    if path.is_dir():
        zips = sorted(path.glob("*.zip"))
        if len(zips) == 1:
            return zips[0]
    return path


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m whatsapp_indexer",
        description="Index WhatsApp messages (Hebrew/English) and serve hybrid search over MCP.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory for messages.db and vector_store/ (default: DATABASE_PATH / VECTOR_STORE_PATH).",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING... (default: LOG_LEVEL or INFO).")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the MCP server on stdio.")

    imp = sub.add_parser("import", help="Backfill messages from a WhatsApp chat export.")
    imp.add_argument("export", type=Path, help="Export ZIP, folder or chat .txt.")
    imp.add_argument("--me", default=None, help="Your display name in the export (marks sent messages).")
    imp.add_argument("--chat-name", default=None, help="Override the chat name taken from the file name.")
    imp.add_argument("--date-order", choices=["DMY", "MDY", "YMD"], default="DMY", help="Date order in the export.")
    imp.add_argument("--dry-run", action="store_true", help="Report what would be imported without writing.")

    search = sub.add_parser("search", help="Search indexed messages.")
    search.add_argument("query", nargs="+", help="Free-text query.")
    search.add_argument("--limit", type=int, default=10)
    search.add_argument("--type", dest="message_type", choices=["all", "sent", "received"], default="all")

    sub.add_parser("status", help="Show store and index statistics.")

    compact = sub.add_parser("compact", help="Drop soft-deleted vectors from the index.")
    compact.add_argument("--force", action="store_true", help="Compact even below the deleted-fraction threshold.")
    return parser


def main() -> None:
    args = _build_parser().parse_args()
    config = IndexerConfig.from_env()
    if args.data_dir is not None:
        config = config.model_copy(
            update={
                "database_path": args.data_dir / "messages.db",
                "vector_store_path": args.data_dir / "vector_store",
            }
        )
    setup_logging(config, level=args.log_level)

    indexer = WhatsAppIndexer(config)
    try:
        indexer.init()
    except IndexerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        from whatsapp_indexer.server import serve
        serve(indexer)
        return

    from whatsapp_indexer.tools import ToolHandlers

    try:
        if args.command == "import":
            from whatsapp_indexer.parser import load_export
            if not args.export.exists():
                print(f"Not found: {args.export}", file=sys.stderr)
                sys.exit(1)
            export_path = _resolve_export_path(args.export)
            print(f"Loading export: {export_path}", file=sys.stderr)
            events = load_export(export_path, me=args.me, chat_name=args.chat_name, date_order=args.date_order)
            if not events:
                print("No messages found in export.", file=sys.stderr)
                sys.exit(1)
            stats = indexer.ingest_batch(events, dry_run=args.dry_run)
            prefix = "[dry run] " if stats.dry_run else ""
            print(
                f"{prefix}{stats.total_messages} messages: {stats.new_messages} new, "
                f"{stats.skipped_messages} already indexed, {stats.empty_messages} empty, {stats.errors} errors"
            )
        elif args.command == "search":
            response = ToolHandlers(indexer).search_messages(" ".join(args.query), args.limit, args.message_type)
            print(response["message"])
            if response["status"] in ("invalid", "error", "not_ready"):
                sys.exit(1)
        elif args.command == "status":
            print(ToolHandlers(indexer).whatsapp_status()["message"])
        elif args.command == "compact":
            done = indexer.compact(force=args.force)
            stats = indexer.index.stats()
            state = "Compacted" if done else "Nothing to compact"
            print(f"{state}: {stats.active_vectors} active / {stats.total_vectors} total vectors")
    except IndexerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        indexer.close()


if __name__ == "__main__":
    main()
