# capsules_cli.py
"""
Command-line entry for the capsule pipeline.

  capsules analyze PATH... [--ai] [--force] [--deep-deps] [--json]
  capsules stats
  capsules clear

Config and the durable cache live under ``<project-root>/.capsules/``.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from capsules.batch import BatchProgress, BatchRunner
from capsules.config import load_project_config
from capsules.logging_utils import configure_logging
from capsules.models import AnalysisOptions
from capsules.orchestrator import AnalysisOrchestrator


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="capsules")
    p.add_argument("--project-root", default="", help="Project root (defaults to CWD)")
    p.add_argument("--config", default=None, help="Explicit config.json path")
    p.add_argument("--verbose", action="store_true", help="Debug logging")
    p.add_argument("--log-file", default=None, help="Also write JSON logs to this file")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("analyze", help="Analyze files (base analysis, optionally enrichment)")
    a.add_argument("paths", nargs="+")
    a.add_argument("--ai", action="store_true", help="Run enrichment after base analysis")
    a.add_argument("--force", action="store_true", help="Ignore cached capsules")
    a.add_argument("--deep-deps", action="store_true", help="Sample inbound references")
    a.add_argument("--json", action="store_true", help="Print capsules as JSON")
    a.add_argument("--concurrency", type=int, default=None)

    sub.add_parser("stats", help="Show cache statistics")
    sub.add_parser("clear", help="Clear the capsule cache")
    return p


def _print_progress(p: BatchProgress) -> None:
    sys.stderr.write(f"[{p.current}/{p.total}] {p.current_file}\n")


async def _analyze(orch: AnalysisOrchestrator, runner: BatchRunner, args: argparse.Namespace) -> int:
    opts = AnalysisOptions(force=args.force, include_ai=args.ai, deep_deps=args.deep_deps)
    if args.ai:
        res = await runner.analyze_and_enhance(args.paths, on_progress=_print_progress, options=opts)
    else:
        res = await runner.run_many(args.paths, args.concurrency, on_progress=_print_progress, options=opts)

    if args.json:
        print(json.dumps([c.to_dict() for c in res.results], indent=2, ensure_ascii=False))
    else:
        for c in res.results:
            tag = "enriched" if c.is_enriched else "base"
            print(f"{c.content_hash[:12]}  {tag:<8}  {c.file}")
            print(f"    {c.summary.get('en', '')}")
            for f in c.facts:
                print(f"    - {f.text}")
    for f in res.failed:
        print(f"FAILED {f.file}: {f.error.to_user_message()}", file=sys.stderr)
    return 0 if not res.failed else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, structured=True, log_file=args.log_file, stream=sys.stderr)

    root = Path(args.project_root or Path.cwd()).resolve()
    cfg, _ = load_project_config(root, args.config)
    orch = AnalysisOrchestrator.from_config(cfg, root)

    if args.cmd == "analyze":
        runner = BatchRunner.from_config(orch, cfg)
        return asyncio.run(_analyze(orch, runner, args))
    if args.cmd == "stats":
        # Memory tier is empty in a fresh process; report on-disk entries too.
        entries = len(list(orch.cache.root.glob("*.json"))) if orch.cache.root and orch.cache.root.is_dir() else 0
        out = orch.cache_stats().to_dict()
        out["disk_entries"] = entries
        print(json.dumps(out, indent=2))
        return 0
    if args.cmd == "clear":
        orch.clear_cache()
        print("cache cleared")
        return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
