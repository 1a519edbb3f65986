"""
`pattern-vault` command-line interface.

Commands
--------
pattern-vault store FILE [--workspace NAME] [--prompt TEXT] [--source SOURCE]
pattern-vault ingest PATH...                  -- store every file under PATH
pattern-vault query "<text>" [--json]         -- similar past code
pattern-vault fail KIND FILE "<message>"      -- record a runtime/test/process failure
pattern-vault similar-failures "<message>"
pattern-vault clusters                        -- list pattern clusters
pattern-vault cluster CLUSTER_ID              -- memories in one cluster
pattern-vault show ID | delete ID | forget ID | trust ID
pattern-vault info                            -- record counts
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from tqdm import tqdm

from .config import Config
from .engine import PatternEngine
from .models import FailureKind, MemoryInput, Source

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def setup_logging(log_dir: str, verbosity: int = 0) -> logging.Logger:
    """File logger for everything plus a quiet stderr handler."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"vault_{timestamp}.log")

    root = logging.getLogger("pattern_vault")
    root.setLevel(logging.DEBUG)

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    root.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel({0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG))
    sh.setFormatter(logging.Formatter("%(levelname)s  %(name)s  %(message)s"))
    root.addHandler(sh)
    return root


def _open_engine(args: argparse.Namespace) -> PatternEngine:
    return PatternEngine.from_config(args.cfg)


def _read_file(path: str, strict: bool = False) -> Optional[str]:
    try:
        with open(path, encoding="utf-8", errors="strict" if strict else "replace") as fh:
            return fh.read()
    except UnicodeDecodeError:
        logger.info("[CLI] Skipping non-text file %s", path)
        return None
    except OSError as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return None


def _iter_files(paths: list[str], engine: PatternEngine) -> list[str]:
    files: list[str] = []
    for path in paths:
        if os.path.isfile(path):
            files.append(path)
            continue
        for dirpath, dirnames, filenames in os.walk(path):
            dirnames[:] = [d for d in dirnames
                           if not engine.exclusions.is_excluded(os.path.join(dirpath, d))]
            for name in sorted(filenames):
                full = os.path.join(dirpath, name)
                if not engine.exclusions.is_excluded(full):
                    files.append(full)
    return files


def _print_store_results(results, file_path: str) -> None:
    if not results:
        print(f"  {file_path}: nothing new stored")
        return
    for r in results:
        line = f"  {r.id}  {file_path}"
        if r.matched_cluster is not None:
            line += f"  [pattern: {r.matched_cluster.label}]"
        print(line)
        if r.similar is not None:
            print(f"      similar to {r.similar.id} (distance {r.similar_distance:.3f})")
        if r.risk_alert is not None:
            print(f"      ! {r.risk_alert.message}")


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_store(args: argparse.Namespace) -> int:
    content = _read_file(args.file)
    if content is None:
        return 1
    engine = _open_engine(args)
    try:
        results = engine.store(MemoryInput(
            content=content,
            file_path=os.path.abspath(args.file),
            workspace_name=args.workspace or os.path.basename(os.getcwd()),
            prompt=args.prompt or "",
            source=Source(args.source),
        ))
        _print_store_results(results, args.file)
    finally:
        engine.close()
    return 0


def _cmd_ingest(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    stored = 0
    try:
        files = _iter_files(args.paths, engine)
        workspace = args.workspace or os.path.basename(os.getcwd())
        for path in tqdm(files, desc="Ingesting", unit="file"):
            content = _read_file(path, strict=True)
            if content is None or "\x00" in content:
                continue
            stored += len(engine.store(MemoryInput(
                content=content,
                file_path=os.path.abspath(path),
                workspace_name=workspace,
            )))
    finally:
        engine.close()
    print(f"\nIngested {len(files)} file(s), stored {stored} new memory chunk(s).")
    return 0


def _cmd_query(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        results = engine.query(args.text)
    finally:
        engine.close()

    if args.json:
        print(json.dumps([asdict(r) for r in results], indent=2))
        return 0
    if not results:
        print(f"No results found for: {args.text!r}")
        return 0
    print(f"\n{len(results)} match(es) for {args.text!r}")
    print("-" * 60)
    for r in results:
        print(f"  {r.score:.3f}  {r.file_path}  ({r.id})")
        if r.summary:
            print(f"         {r.summary}")
        if r.match_context:
            print(f"         {r.match_context}")
    return 0


def _cmd_fail(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        event = engine.record_failure(args.kind, args.message,
                                      os.path.abspath(args.file))
    finally:
        engine.close()
    if event is None:
        print(f"Unknown failure kind: {args.kind}", file=sys.stderr)
        return 1
    linked = event.related_memory_id or "no memory"
    print(f"Recorded {event.kind} failure {event.id} (linked to {linked})")
    return 0


def _cmd_similar_failures(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        events = engine.find_similar_failures(args.message)
    finally:
        engine.close()
    if not events:
        print("No similar failures recorded.")
        return 0
    for e in events:
        print(f"  {e.timestamp}  {e.kind:<8}  {os.path.basename(e.file_path)}  "
              f"{e.message[:80]}")
    return 0


def _cmd_clusters(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        clusters = engine.get_clusters()
    finally:
        engine.close()
    if not clusters:
        print("No pattern clusters yet.")
        return 0
    for c in sorted(clusters, key=lambda c: c.usage_count, reverse=True):
        print(f"  {c.usage_count:>4}  {c.id}  {c.label[:70]}")
    return 0


def _cmd_cluster(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        cluster = engine.get_cluster(args.cluster_id)
        if cluster is None:
            print(f"Unknown cluster: {args.cluster_id}", file=sys.stderr)
            return 1
        memories = engine.get_cluster_memories(args.cluster_id)
    finally:
        engine.close()
    print(f"\n{cluster.label}  [{len(memories)} memory(ies)]")
    print("-" * 60)
    for m in memories:
        print(f"  {m.id}  {m.file_path}  {m.timestamp}")
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        memory = engine.get_pattern_details(args.id)
        cluster = engine.get_memory_cluster(args.id) if memory is not None else None
    finally:
        engine.close()
    if memory is None:
        print(f"Unknown memory: {args.id}", file=sys.stderr)
        return 1
    data = asdict(memory)
    data["cluster"] = cluster.label if cluster is not None else None
    print(json.dumps(data, indent=2))
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        ok = engine.delete_memory(args.id)
    finally:
        engine.close()
    if not ok:
        print(f"Unknown memory: {args.id}", file=sys.stderr)
        return 1
    print(f"Deleted {args.id}")
    return 0


def _cmd_forget(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        ok = engine.forget_context(args.id)
    finally:
        engine.close()
    if not ok:
        print(f"Unknown memory: {args.id}", file=sys.stderr)
        return 1
    print(f"Forgot AI context of {args.id}")
    return 0


def _cmd_trust(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        ok = engine.trust_pattern(args.id)
    finally:
        engine.close()
    if not ok:
        print(f"Unknown memory: {args.id}", file=sys.stderr)
        return 1
    print(f"Trusted {args.id}")
    return 0


def _cmd_info(args: argparse.Namespace) -> int:
    engine = _open_engine(args)
    try:
        info = engine.vector_store.collection_info()
    finally:
        engine.close()
    print(f"Database: {info['path']}")
    for key in ("memories", "clusters", "failures"):
        print(f"  {key:<10} {info[key]}")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pattern-vault",
        description="Pattern Vault: semantic memory of code, context and failures",
    )
    parser.add_argument("--config", default=None, metavar="PATH",
                        help="Path to a .pattern_vault.yaml file")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log to stderr (-v info, -vv debug)")
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    store_p = subparsers.add_parser("store", help="Store one file")
    store_p.add_argument("file")
    store_p.add_argument("--workspace", default=None)
    store_p.add_argument("--prompt", default=None,
                         help="Prompt or intent that produced the code")
    store_p.add_argument("--source", default=Source.HUMAN.value,
                         choices=[s.value for s in Source])
    store_p.set_defaults(func=_cmd_store)

    ingest_p = subparsers.add_parser("ingest", help="Store every file under PATHs")
    ingest_p.add_argument("paths", nargs="+")
    ingest_p.add_argument("--workspace", default=None)
    ingest_p.set_defaults(func=_cmd_ingest)

    query_p = subparsers.add_parser("query", help="Find similar stored code")
    query_p.add_argument("text")
    query_p.add_argument("--json", action="store_true", help="Print JSON")
    query_p.set_defaults(func=_cmd_query)

    fail_p = subparsers.add_parser("fail", help="Record a failure")
    fail_p.add_argument("kind", choices=[k.value for k in FailureKind])
    fail_p.add_argument("file")
    fail_p.add_argument("message")
    fail_p.set_defaults(func=_cmd_fail)

    similar_p = subparsers.add_parser("similar-failures",
                                      help="Past failures like MESSAGE")
    similar_p.add_argument("message")
    similar_p.set_defaults(func=_cmd_similar_failures)

    clusters_p = subparsers.add_parser("clusters", help="List pattern clusters")
    clusters_p.set_defaults(func=_cmd_clusters)

    cluster_p = subparsers.add_parser("cluster", help="Memories of one cluster")
    cluster_p.add_argument("cluster_id")
    cluster_p.set_defaults(func=_cmd_cluster)

    for name, handler, help_text in [
        ("show", _cmd_show, "Show one memory"),
        ("delete", _cmd_delete, "Delete a memory and its derived vectors"),
        ("forget", _cmd_forget, "Strip AI context from a memory"),
        ("trust", _cmd_trust, "Mark a memory as trusted"),
    ]:
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("id")
        p.set_defaults(func=handler)

    info_p = subparsers.add_parser("info", help="Show record counts")
    info_p.set_defaults(func=_cmd_info)
    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    args.cfg = Config.load(args.config)
    setup_logging(args.cfg.log_dir, args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
