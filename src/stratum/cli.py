"""Stratum CLI -- inspect and maintain a memory database from the shell."""

import argparse
import json
import logging
import sys
import time

from stratum.config import MemoryConfig, PersistenceConfig
from stratum.manager import MemoryManager
from stratum.types import EntryType, Tier

logger = logging.getLogger("stratum.cli")

_TIER_CHOICES = [Tier.EPISODIC.value, Tier.SEMANTIC.value]


def _open_manager(args) -> MemoryManager:
    persistence = PersistenceConfig.from_env(db_path=getattr(args, "db", None))
    logger.debug("Opening %s", persistence.db_path)
    return MemoryManager(config=MemoryConfig.from_env(), persistence=persistence)


def cmd_status(args):
    """Show the health report."""
    with _open_manager(args) as mm:
        report = mm.get_health_report()

    if getattr(args, "json", False):
        print(json.dumps(report, indent=2, default=str))
        return

    tiers = report["tiers"]
    print(f"Status:     {report['status']}")
    print(f"Backend:    {report['backend']} ({'durable' if report['durable'] else 'volatile'})")
    print(f"FTS:        {'available' if report['fts']['available'] else 'unavailable'}")
    print(f"Episodic:   {tiers['episodic']['count']} (db {tiers['episodic']['db_count']})")
    print(f"Semantic:   {tiers['semantic']['count']} (db {tiers['semantic']['db_count']})")
    print(f"DB size:    {report['db_size_bytes'] / 1024:.1f} KB")
    for error in report["errors"]:
        print(f"  ! {error}")


def cmd_stats(args):
    """Show tier sizes."""
    with _open_manager(args) as mm:
        stats = mm.get_stats()
    if getattr(args, "json", False):
        print(json.dumps(stats, indent=2))
        return
    for key, value in stats.items():
        print(f"{key}: {value}")


def cmd_search(args):
    """Hybrid (keyword) search across tiers."""
    query_text = " ".join(args.query_text)
    if not query_text.strip():
        print("Usage: stratum search <search text>", file=sys.stderr)
        sys.exit(1)

    tiers = [args.tier] if getattr(args, "tier", None) else None
    start = time.monotonic()
    with _open_manager(args) as mm:
        results = mm.hybrid_search(query_text, max_results=args.limit, tiers=tiers)
    elapsed = time.monotonic() - start

    if getattr(args, "json", False):
        out = [r.to_dict() for r in results]
        print(json.dumps({"results": out, "count": len(out), "elapsed_s": round(elapsed, 3)}, indent=2))
        return

    if not results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return
    for r in results:
        preview = r.entry.content[:120].replace("\n", " ")
        print(f"{int(r.score * 100):>3}%  {r.tier.value:<9} {r.entry.type:<12} {preview}  [{r.entry.id}]")
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s)")


def cmd_add(args):
    """Add an episodic or semantic memory."""
    content = " ".join(args.content)
    if not content.strip():
        print("Usage: stratum add <text> [--tier TIER] [--type TYPE]", file=sys.stderr)
        sys.exit(1)

    with _open_manager(args) as mm:
        if args.tier == Tier.SEMANTIC.value:
            entry = mm.add_semantic(content, type=args.type or EntryType.KNOWLEDGE)
        else:
            entry = mm.add_episodic(content, type=args.type or EntryType.INTERACTION)
    print(f"Stored [{args.tier}/{entry.type}] {entry.id}: {content[:80]}")


def cmd_compact(args):
    """Archive old episodic entries into semantic summaries."""
    with _open_manager(args) as mm:
        result = mm.run_compaction(target_episodic_size=args.target)
    print(
        f"Archived {result['archived']} entries into {result['summaries_created']} summaries "
        f"({result['entries_before']} -> {result['entries_after']} episodic)"
    )


def cmd_export(args):
    """Write a snapshot file."""
    with _open_manager(args) as mm:
        result = mm.export_to_file(args.file)
    note = "encrypted" if result["encrypted"] else "plaintext"
    print(f"Exported {result['episodic']} episodic, {result['semantic']} semantic to {result['filepath']} ({note})")


def cmd_import(args):
    """Replace the database contents with a snapshot file."""
    with _open_manager(args) as mm:
        try:
            result = mm.import_from_file(args.file)
        except (OSError, ValueError) as e:
            print(f"Import failed: {e}", file=sys.stderr)
            sys.exit(1)
    print(f"Imported {result['episodic']} episodic, {result['semantic']} semantic from {result['filepath']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stratum",
        description="Stratum -- tiered memory store for agents",
    )
    parser.add_argument("--db", help="Database path (default: $STRATUM_DB_PATH or ~/.stratum/stratum.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Show health report")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    stats_parser = subparsers.add_parser("stats", help="Show tier sizes")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    search_parser = subparsers.add_parser("search", help="Search memories")
    search_parser.add_argument("query_text", nargs="+", help="Search text")
    search_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    search_parser.add_argument("--tier", choices=_TIER_CHOICES, help="Restrict to one tier")
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    add_parser = subparsers.add_parser("add", help="Add a memory")
    add_parser.add_argument("content", nargs="+", help="Memory content")
    add_parser.add_argument("--tier", choices=_TIER_CHOICES, default=Tier.EPISODIC.value)
    add_parser.add_argument("--type", help="Entry type (default: interaction / knowledge)")

    compact_parser = subparsers.add_parser("compact", help="Archive old episodic entries")
    compact_parser.add_argument("--target", type=int, default=None, help="Episodic size to keep")

    export_parser = subparsers.add_parser("export", help="Export a snapshot file")
    export_parser.add_argument("file", help="Destination path")

    import_parser = subparsers.add_parser("import", help="Import a snapshot file (replaces all state)")
    import_parser.add_argument("file", help="Snapshot path")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "status": cmd_status,
        "stats": cmd_stats,
        "search": cmd_search,
        "add": cmd_add,
        "compact": cmd_compact,
        "export": cmd_export,
        "import": cmd_import,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
