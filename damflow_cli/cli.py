from __future__ import annotations

import argparse
import json
import mimetypes
import os
import subprocess
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from damflow_core.assets.types import Asset, IngestRequest, Specificity
from damflow_core.config import get_config
from damflow_core.logging import configure_logging
from damflow_core.maintenance.backfill import BACKFILL_STAGES
from damflow_core.runtime import Runtime, build_runtime

SERVICE_NAME = "damflow-cli"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _asset_summary(asset: Asset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "originalName": asset.original_name,
        "mimeType": asset.mime_type,
        "path": asset.path,
        "thumbnailPath": asset.thumbnail_path,
        "previewFrames": len(asset.preview_frames),
        "ingestState": asset.ingest_state.value,
        "tags": list(asset.ai_data.tags) if asset.ai_data else [],
    }


def _runtime() -> Runtime:
    config = get_config()
    configure_logging(
        service=SERVICE_NAME,
        env=config.env,
        version=os.getenv("DAMFLOW_VERSION"),
    )
    return build_runtime(config)


def cmd_ingest(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    mime_type = args.content_type or mimetypes.guess_type(path.as_posix())[0]
    if not mime_type:
        raise ValueError(f"Cannot infer content type for {path.name}")
    runtime = _runtime()
    try:
        asset = runtime.coordinator.store_upload(
            str(path),
            original_name=args.name or path.name,
            mime_type=mime_type,
            uploaded_by=args.uploaded_by,
        )
        outcome = runtime.coordinator.run_pipeline(
            IngestRequest(
                asset_id=asset.id,
                local_path=str(path),
                mime_type=mime_type,
                creativity=args.creativity,
                specificity=Specificity.parse(args.specificity),
            )
        )
        stored = runtime.store.require(asset.id)
    finally:
        runtime.close()
    _print_json(
        {
            "asset": _asset_summary(stored),
            "events": [asdict(event) for event in outcome.events],
            "timings": outcome.timings,
        }
    )
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    runtime = _runtime()
    try:
        response = runtime.search.search(
            args.query,
            asset_type=args.type,
            color=args.color,
        )
    finally:
        runtime.close()
    _print_json(
        {
            "isFallback": response.is_fallback,
            "results": [
                _asset_summary(asset) for asset in response.results[: args.limit]
            ],
        }
    )
    return 0


def cmd_backfill(args: argparse.Namespace) -> int:
    runtime = _runtime()
    try:
        report = runtime.backfill.run(
            args.stage,
            limit=args.limit,
            creativity=args.creativity,
            specificity=Specificity.parse(args.specificity),
        )
    finally:
        runtime.close()
    _print_json(
        {
            "stage": report.stage,
            "candidates": report.candidates,
            "completed": report.completed,
            "failed": report.failed,
            "skipped": report.skipped,
            "durationMs": report.duration_ms,
        }
    )
    return 1 if report.failed else 0


def cmd_purge_expired(args: argparse.Namespace) -> int:
    runtime = _runtime()
    try:
        if args.all:
            report = runtime.trash.empty_trash()
        else:
            report = runtime.trash.purge_expired()
    finally:
        runtime.close()
    _print_json({"purged": report.purged, "fileErrors": report.file_errors})
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    runtime = _runtime()
    try:
        counts = runtime.store.state_counts()
        trash = runtime.trash.list_trash(page=1, page_size=1)
    finally:
        runtime.close()
    _print_json(
        {
            "states": counts,
            "active": sum(counts.values()),
            "trashed": trash.total,
        }
    )
    return 0


def _uvicorn_cmd(target: str, host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        target,
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_serve(args: argparse.Namespace) -> int:
    cmd = _uvicorn_cmd(
        "local_adapter.service:app", args.host, args.port, args.log_level
    )
    if args.dry_run:
        print(" ".join(cmd))
        return 0
    proc = subprocess.Popen(cmd)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait(timeout=5)
        return 0


def _creativity(value: str) -> float:
    parsed = float(value)
    if not 0.0 <= parsed <= 1.0:
        raise argparse.ArgumentTypeError("creativity must be between 0 and 1")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="damflow")
    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser(
        "ingest", help="Store a local file and run the full pipeline"
    )
    ingest_parser.add_argument("--path", required=True)
    ingest_parser.add_argument("--name", help="Display name (defaults to file name)")
    ingest_parser.add_argument("--content-type")
    ingest_parser.add_argument("--uploaded-by")
    ingest_parser.add_argument("--creativity", type=_creativity)
    ingest_parser.add_argument(
        "--specificity", choices=[s.value for s in Specificity], default="general"
    )
    ingest_parser.set_defaults(func=cmd_ingest)

    search_parser = subparsers.add_parser("search", help="Search or browse assets")
    search_parser.add_argument("--query", default="")
    search_parser.add_argument(
        "--type", choices=["all", "image", "video", "audio", "document"]
    )
    search_parser.add_argument("--color")
    search_parser.add_argument("--limit", type=int, default=20)
    search_parser.set_defaults(func=cmd_search)

    backfill_parser = subparsers.add_parser(
        "backfill", help="Re-run missing derivative or enrichment stages"
    )
    backfill_parser.add_argument("--stage", choices=BACKFILL_STAGES, default="all")
    backfill_parser.add_argument("--limit", type=int)
    backfill_parser.add_argument("--creativity", type=_creativity)
    backfill_parser.add_argument(
        "--specificity", choices=[s.value for s in Specificity], default="general"
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    purge_parser = subparsers.add_parser(
        "purge-expired", help="Permanently delete assets past trash retention"
    )
    purge_parser.add_argument(
        "--all", action="store_true", help="Empty the whole trash"
    )
    purge_parser.set_defaults(func=cmd_purge_expired)

    status_parser = subparsers.add_parser("status", help="Show ingest state counts")
    status_parser.set_defaults(func=cmd_status)

    serve_parser = subparsers.add_parser("serve", help="Run the local HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument("--log-level", default="info")
    serve_parser.add_argument(
        "--dry-run", action="store_true", help="Print command only"
    )
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
