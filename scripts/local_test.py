"""
Quick local test helper: runs the background removal session on a local
image and writes the composited PNG to disk, bypassing the HTTP layer.
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backdrop_service.background import ImageBackground, SolidColor, Transparent
from backdrop_service.local_provider import LocalSegmentationProvider
from backdrop_service.model_loader import ModelLifecycleManager
from backdrop_service.orchestrator import FallbackOrchestrator, StateChange
from backdrop_service.pipeline import BackgroundRemovalSession
from backdrop_service.remote_provider import RemoteSegmentationProvider


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove the background of a local image")
    parser.add_argument("--input", required=True, help="Path to the input image")
    parser.add_argument("--output", help="Where to write the PNG (defaults to <name>-nobg.png)")
    parser.add_argument("--background", default="transparent", choices=["transparent", "color", "image"])
    parser.add_argument("--color", default="#ffffff", help="Hex color for --background color")
    parser.add_argument("--background-image", help="Image file for --background image")
    return parser.parse_args()


def _print_state(change: StateChange) -> None:
    line = f"[{change.state.value}]"
    if change.notice:
        line += f" {change.notice}"
    print(line)


async def run(args: argparse.Namespace) -> Path:
    input_path = Path(args.input)
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    manager = ModelLifecycleManager()
    await manager.init()
    orchestrator = FallbackOrchestrator(RemoteSegmentationProvider(), LocalSegmentationProvider(manager))
    orchestrator.subscribe(_print_state)
    session = BackgroundRemovalSession(orchestrator)
    try:
        mime_type = mimetypes.guess_type(input_path.name)[0] or "application/octet-stream"
        session.load_image(input_path.read_bytes(), mime_type, filename=input_path.name)
        if args.background == "color":
            session.set_background(SolidColor.from_hex(args.color))
        elif args.background == "image":
            if not args.background_image:
                raise SystemExit("--background-image is required with --background image")
            session.set_background(ImageBackground(Path(args.background_image).read_bytes()))
        else:
            session.set_background(Transparent())

        result = await session.process()
        if result is None:
            raise SystemExit("request was superseded before it finished")
        for warning in result.warnings:
            print(f"warning: {warning}")
        artifact = session.export()
    finally:
        session.close()
        await manager.dispose()

    output_path = Path(args.output) if args.output else input_path.with_name(artifact.filename)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(artifact.data)
    return output_path


def main() -> None:
    output_path = asyncio.run(run(parse_args()))
    print(f"Wrote result to {output_path}")


if __name__ == "__main__":
    main()
