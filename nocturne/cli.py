"""
Nocturne CLI: run a synthesis over a fragment file and inspect the analysis store.

Usage examples:
    python -m nocturne synthesize fragments.json
    python -m nocturne reports --limit 5
    python -m nocturne signatures --min-confidence 0.9
    python -m nocturne stats
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from nocturne.base.config import NocturneConfig, setup_logging
from nocturne.dreams.processor import DreamProcessor
from nocturne.dreams.scheduler import MinimumIntervalSchedule
from nocturne.dreams.storage import DreamStorage
from nocturne.errors import NocturneError


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _load_fragments(path: Path) -> list:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("fragments", [])
    if not isinstance(data, list):
        raise ValueError("fragment file must hold a JSON list or an object with a 'fragments' list")
    return data


async def _synthesize(config: NocturneConfig, storage: DreamStorage, path: Path) -> int:
    schedule = await MinimumIntervalSchedule.from_storage(storage, config.synthesis.min_interval_seconds)
    processor = DreamProcessor(config, storage, schedule=schedule)
    try:
        report = await processor.perform_synthesis(_load_fragments(path))
        await processor.bus.drain()
    finally:
        processor.dispose()
    _emit(report.model_dump(mode="json"))
    return 0


async def _reports(storage: DreamStorage, limit: int) -> int:
    reports = await storage.get_recent_reports(limit)
    _emit([r.model_dump(mode="json") for r in reports])
    return 0


async def _signatures(storage: DreamStorage, min_confidence: float, limit: Optional[int]) -> int:
    signatures = await storage.get_high_confidence_signatures(min_confidence, limit)
    _emit([s.model_dump(mode="json") for s in signatures])
    return 0


async def _stats(storage: DreamStorage) -> int:
    _emit(await storage.get_statistics())
    return 0


async def _run(args: argparse.Namespace, config: NocturneConfig) -> int:
    storage = DreamStorage(config.storage)
    try:
        if args.command == "synthesize":
            return await _synthesize(config, storage, Path(args.fragments))
        if args.command == "reports":
            return await _reports(storage, args.limit)
        if args.command == "signatures":
            return await _signatures(storage, args.min_confidence, args.limit)
        return await _stats(storage)
    finally:
        await storage.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nocturne", description="Nocturnal cross-domain correlation engine")
    parser.add_argument("--data-dir", help="Directory holding the analysis database")
    parser.add_argument("--log-level", help="Override NOCTURNE_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    synth = sub.add_parser("synthesize", help="Run one synthesis over a JSON fragment file")
    synth.add_argument("fragments", help="Path to a JSON list of fragments")

    reports = sub.add_parser("reports", help="Show recent synthesis reports")
    reports.add_argument("--limit", type=int, default=10)

    sigs = sub.add_parser("signatures", help="Show committed surveillance signatures")
    sigs.add_argument("--min-confidence", type=float, default=0.85)
    sigs.add_argument("--limit", type=int, default=None)

    sub.add_parser("stats", help="Show analysis store statistics")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = NocturneConfig.from_env()
        if args.data_dir:
            config = replace(config, storage=replace(config.storage, base_dir=Path(args.data_dir)))
        if args.log_level:
            config = replace(config, log=replace(config.log, level=args.log_level))
        setup_logging(config)
        return asyncio.run(_run(args, config))
    except NocturneError as e:
        _emit({"error": e.to_dict()})
        return 1
    except (OSError, ValueError) as e:
        _emit({"error": {"message": str(e)}})
        return 2


if __name__ == "__main__":
    sys.exit(main())
