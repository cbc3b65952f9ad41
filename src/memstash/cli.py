"""
Command-line interface for memstash.

Sub-commands
------------
store    – Store a piece of text in memory.
retrieve – Retrieve the most similar memories for a query.
list     – List all stored memories, newest first.
tags     – List memories carrying the given tags.
delete   – Delete a memory by its ID.
count    – Print the number of stored memories.
stats    – Print statistics about the stored memories.
expire   – Delete memories older than the expiry age.
export   – Write a snapshot of the store to a file or stdout.
import   – Replace the store with a snapshot file.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import StoreConfig
from .errors import MalformedSnapshotError
from .memory import DEFAULT_SNAPSHOT_PATH, MemoryManager


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memstash",
        description="In-process semantic memory with deduplication and expiry.",
    )
    parser.add_argument(
        "--snapshot",
        default=DEFAULT_SNAPSHOT_PATH,
        metavar="PATH",
        help=f"Snapshot file holding the memories (default: {DEFAULT_SNAPSHOT_PATH}).",
    )
    parser.add_argument(
        "--max-memories",
        type=int,
        default=None,
        metavar="N",
        help="Maximum number of memories kept (default: value saved in the snapshot, or 1000).",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        metavar="SCORE",
        help="Similarity above which new text is merged into an existing memory (default: 0.7).",
    )
    parser.add_argument(
        "--expire-after-days",
        type=float,
        default=None,
        metavar="DAYS",
        help="Age at which memories expire; enables the expire command.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Remember a piece of text.")
    p_store.add_argument("text", nargs="?", help="Text to remember; read from stdin when omitted.")
    p_store.add_argument(
        "--tag",
        action="append",
        dest="tags",
        default=None,
        metavar="TAG",
        help="Tag for the memory (repeatable).",
    )
    p_store.add_argument("--category", default=None, help="Optional category label.")

    # retrieve
    p_retrieve = sub.add_parser("retrieve", help="Retrieve similar memories.")
    p_retrieve.add_argument("query", help="Free-text query.")
    p_retrieve.add_argument(
        "-n",
        type=int,
        default=5,
        metavar="N",
        help="Return at most N matches (default: 5).",
    )
    p_retrieve.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Print matches as JSON.",
    )

    # list
    p_list = sub.add_parser("list", help="Show stored memories, newest first.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=100,
        metavar="N",
        help="Show at most N memories (default: 100).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # tags
    p_tags = sub.add_parser("tags", help="List memories by tag.")
    p_tags.add_argument("tags", nargs="+", metavar="TAG", help="Tags to look for.")
    p_tags.add_argument(
        "--all",
        action="store_true",
        dest="match_all",
        help="Require every tag instead of any.",
    )
    p_tags.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # delete
    p_delete = sub.add_parser("delete", help="Forget a memory by ID.")
    p_delete.add_argument("id", help="ID of the memory, e.g. mem_3.")

    # count / stats / expire
    sub.add_parser("count", help="Print the number of stored memories.")
    sub.add_parser("stats", help="Print memory statistics as JSON.")
    sub.add_parser("expire", help="Delete memories older than the expiry age.")

    # export / import
    p_export = sub.add_parser("export", help="Write a snapshot of all memories.")
    p_export.add_argument("file", nargs="?", help="Output file (stdout if omitted).")
    p_import = sub.add_parser("import", help="Replace all memories with a snapshot.")
    p_import.add_argument("file", help="Snapshot file to import.")

    return parser


def _config_from_args(args: argparse.Namespace) -> StoreConfig | None:
    overrides = {}
    if args.max_memories is not None:
        overrides["max_memories"] = args.max_memories
    if args.threshold is not None:
        overrides["similarity_threshold"] = args.threshold
    if args.expire_after_days is not None:
        overrides["auto_expire"] = True
        overrides["expire_after_days"] = args.expire_after_days
    return StoreConfig(**overrides) if overrides else None


def _print_memories(memories: list[dict], as_json: bool) -> None:
    if as_json:
        print(json.dumps(memories, indent=2))
        return
    for m in memories:
        meta = m["metadata"]
        tags = ",".join(meta.get("tags", []))
        print(f"id={m['id']} ts={meta.get('timestamp', '')}" + (f" tags={tags}" if tags else ""))
        print(f"    {m['content'][:120]}")
        print()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _config_from_args(args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        manager = MemoryManager(path=args.snapshot, config=config)
    except MalformedSnapshotError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    with manager:
        return _run(manager, args)


def _run(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.command == "store":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        memory_id = manager.store(text.strip(), tags=args.tags, category=args.category)
        print(f"Stored memory {memory_id}.")

    elif args.command == "retrieve":
        results = manager.retrieve(args.query, n_results=args.n)
        if not results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps(results, indent=2))
        else:
            for rank, match in enumerate(results, start=1):
                print(f"#{rank} id={match['id']} score={match['similarity']:.3f}")
                print(f"    {match['content'][:200]}")

    elif args.command == "list":
        memories = manager.list_all(limit=args.limit)
        if not memories:
            print("No memories stored.")
            return 0
        _print_memories(memories, args.as_json)

    elif args.command == "tags":
        memories = manager.find_by_tags(args.tags, match_all=args.match_all)
        if not memories:
            print("No memories found.")
            return 0
        _print_memories(memories, args.as_json)

    elif args.command == "delete":
        if not manager.delete(args.id):
            print(f"Error: no memory with id {args.id}.", file=sys.stderr)
            return 1
        print(f"Deleted memory {args.id}.")

    elif args.command == "count":
        print(manager.count())

    elif args.command == "stats":
        print(json.dumps(manager.stats(), indent=2))

    elif args.command == "expire":
        print(f"Expired {manager.expire()} memories.")

    elif args.command == "export":
        snapshot = manager.export()
        if args.file:
            try:
                with open(args.file, "w", encoding="utf-8") as fh:
                    fh.write(snapshot)
            except OSError as exc:
                print(f"Error: cannot write {args.file}: {exc.strerror or exc}", file=sys.stderr)
                return 1
            print(f"Exported {manager.count()} memories to {args.file}.")
        else:
            print(snapshot)

    elif args.command == "import":
        try:
            with open(args.file, encoding="utf-8") as fh:
                snapshot = fh.read()
        except OSError as exc:
            print(f"Error: cannot read {args.file}: {exc.strerror or exc}", file=sys.stderr)
            return 1
        if not manager.import_snapshot(snapshot):
            print(f"Error: {args.file} is not a valid snapshot.", file=sys.stderr)
            return 1
        print(f"Imported {manager.count()} memories.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
