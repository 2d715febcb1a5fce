"""Operator CLI for the model lifecycle.

Examples:
    python -m edgeml download yolo-lite resnet-tiny
    python -m edgeml check-updates
    python -m edgeml install-updates
    python -m edgeml status
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import Any

from edgeml import __version__
from edgeml.core.config import get_settings
from edgeml.core.exceptions import ModelLifecycleError
from edgeml.core.logging import get_logger, setup_logging
from edgeml.runtime import ModelRuntime, build_runtime

logger = get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_progress(model_id: str, downloaded: int, total: int | None) -> None:
    if total:
        print(f"\r  {model_id:<30} {downloaded / total:6.1%}", end="", file=sys.stderr, flush=True)


async def _download(runtime: ModelRuntime, args: argparse.Namespace) -> int:
    on_progress = None if args.quiet else _print_progress
    result = await runtime.downloader.download_many(args.model_ids, on_progress=on_progress)
    if not args.quiet:
        print(file=sys.stderr)
    _print_json(result.to_dict())
    return 0 if result.is_successful else 1


async def _check_updates(runtime: ModelRuntime, args: argparse.Namespace) -> int:
    updates = await runtime.updater.check_all_updates()
    _print_json([update.to_dict() for update in updates])
    return 0


async def _install_updates(runtime: ModelRuntime, args: argparse.Namespace) -> int:
    result = await runtime.updater.install_all()
    _print_json(result.to_dict())
    return 0 if result.is_successful else 1


async def _status(runtime: ModelRuntime, args: argparse.Namespace) -> int:
    usage = runtime.store.usage()
    _print_json(
        {
            "version": __version__,
            "registered_models": [d.to_dict() for d in runtime.registry.all()],
            "storage": {
                "root": str(runtime.store.root),
                "total_bytes": usage.total_bytes,
                "model_count": usage.model_count,
                "per_model_bytes": usage.per_model_bytes,
            },
            "cache": runtime.cache.get_status(),
            "compute_backend_override": runtime.settings.compute_backend_override,
        }
    )
    return 0


COMMANDS = {
    "download": _download,
    "check-updates": _check_updates,
    "install-updates": _install_updates,
    "status": _status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edgeml",
        description="Manage on-device models: download, update and inspect",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    download = subparsers.add_parser("download", help="Download models from the catalog")
    download.add_argument("model_ids", nargs="+", help="Model ids to download")
    download.add_argument("--quiet", action="store_true", help="Don't print progress")

    subparsers.add_parser("check-updates", help="List models with a newer catalog version")
    subparsers.add_parser("install-updates", help="Install every available update")
    subparsers.add_parser("status", help="Show registry, storage and cache status")
    return parser


async def _run(args: argparse.Namespace) -> int:
    runtime = build_runtime(get_settings())
    try:
        return await COMMANDS[args.command](runtime, args)
    finally:
        await runtime.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(get_settings())
    try:
        return asyncio.run(_run(args))
    except ModelLifecycleError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print_json(e.to_dict())
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
