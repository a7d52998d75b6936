# capsules/server.py
from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI

from capsules import __version__
from capsules.api import router as capsules_router
from capsules.batch import BatchRunner
from capsules.config import load_project_config
from capsules.logger import get_logger
from capsules.logging_utils import configure_logging
from capsules.orchestrator import AnalysisOrchestrator

logger = get_logger("capsules.server")


def create_app(
    cfg: Optional[Dict[str, Any]] = None,
    project_root: Optional[Path] = None,
    *,
    orchestrator: Optional[AnalysisOrchestrator] = None,
    batch_runner: Optional[BatchRunner] = None,
) -> FastAPI:
    root = Path(project_root or Path.cwd()).resolve()
    if cfg is None:
        cfg, _ = load_project_config(root)

    orch = orchestrator or AnalysisOrchestrator.from_config(cfg, root)
    runner = batch_runner or BatchRunner.from_config(orch, cfg)

    app = FastAPI(title="Capsules Server", version=__version__)
    app.state.orchestrator = orch
    app.state.batch_runner = runner
    app.state.config = cfg
    app.include_router(capsules_router)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="capsules-server", description="Serve the capsule analysis API.")
    ap.add_argument("--root", default=".", help="Project root (config and cache live under .capsules/)")
    ap.add_argument("--config", default=None, help="Explicit config.json path")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    configure_logging(verbose=args.verbose)
    root = Path(args.root).resolve()
    cfg, cfg_path = load_project_config(root, args.config)
    server_cfg = cfg.get("server") or {}
    host = args.host or server_cfg.get("host", "127.0.0.1")
    port = int(args.port or server_cfg.get("port", 8787))

    logger.info("starting server", ctx={"host": host, "port": port, "root": str(root), "config": str(cfg_path)})
    app = create_app(cfg, root)
    uvicorn.run(app, host=host, port=port, log_level=os.getenv("CAPSULES_LOGLEVEL", "info"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
