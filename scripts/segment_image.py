#!/usr/bin/env python3
"""
Segment an image from the command line with a SAM worker.

Features:
- Point, box and label-mask prompts
- Any registered model variant or alias
- Polygons printed or written as JSON in full-image coordinates
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np
from PIL import Image

from sam_session.config import ModelVariant
from sam_session.engine.registry import list_aliases, list_models, model_info
from sam_session.errors import SessionError
from sam_session.session import SegmentationSession

logger = logging.getLogger("segment_image")


def parse_point(text: str) -> tuple[int, int]:
    """Parse an 'x,y' argument."""
    try:
        x, y = (int(v) for v in text.split(","))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Expected 'x,y', got '{text}'") from e
    return x, y


def print_models() -> None:
    """Print the registered variants."""
    aliases = list_aliases()
    for name in list_models():
        info = model_info(name)
        names = [alias for alias, target in aliases.items() if target == name]
        alias_text = f" (aliases: {', '.join(names)})" if names else ""
        print(f"{name:<16} {info['model_id']:<30} ~{info['weights_size_mb']} MB{alias_text}")
        print(f"{'':<16} {info['description']}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Segment an image with a SAM model running in a worker process",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python segment_image.py photo.jpg --point 120,80
  python segment_image.py photo.jpg --point 120,80 --neg 300,40 --model vit-l
  python segment_image.py photo.jpg --box 40 40 90 120 --only-biggest
  python segment_image.py photo.jpg --mask labels.png -o polygons.json
  python segment_image.py --list-models
        """,
    )
    parser.add_argument("image", type=Path, nargs="?", help="Image to segment")
    parser.add_argument(
        "--point",
        type=parse_point,
        action="append",
        default=[],
        help="Positive click as x,y (repeatable)",
    )
    parser.add_argument(
        "--neg",
        type=parse_point,
        action="append",
        default=[],
        help="Negative click as x,y (repeatable)",
    )
    parser.add_argument(
        "--region",
        type=int,
        nargs=4,
        metavar=("X", "Y", "W", "H"),
        help="Area the clicks were made in (e.g., the visible view)",
    )
    parser.add_argument(
        "--box",
        type=int,
        nargs=4,
        metavar=("X0", "Y0", "X1", "Y1"),
        help="Bounding box prompt",
    )
    parser.add_argument("--mask", type=Path, help="Label image prompt (one object per value)")
    parser.add_argument(
        "--model",
        default=ModelVariant.SAM_VIT_BASE.value,
        help="Model variant or alias (default: %(default)s)",
    )
    parser.add_argument("--device", help="Device override (cuda, mps, cpu)")
    parser.add_argument(
        "--only-biggest",
        action="store_true",
        help="Keep only the largest polygon per object",
    )
    parser.add_argument("-o", "--output", type=Path, help="Write polygons as JSON")
    parser.add_argument("--list-models", action="store_true", help="List model variants and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log worker progress")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_models:
        print_models()
        return 0

    if args.image is None:
        parser.error("an image is required")
    prompts = sum(bool(p) for p in (args.point or args.neg, args.box, args.mask))
    if prompts != 1:
        parser.error("give exactly one prompt: --point/--neg, --box or --mask")

    image = Image.open(args.image)

    try:
        session = SegmentationSession.instantiate(
            image, logger=logger, variant=args.model, device=args.device
        )
    except SessionError as e:
        print(f"Could not start session: {e}", file=sys.stderr)
        return 1

    try:
        session.set_return_only_biggest(args.only_biggest)
        if args.box:
            polygons = session.fetch_2d_segmentation_from_box(args.box)
        elif args.mask:
            polygons = session.fetch_2d_segmentation_from_mask(np.asarray(Image.open(args.mask)))
        else:
            polygons = session.fetch_2d_segmentation(args.point, args.neg, region=args.region)
    except SessionError as e:
        print(f"Segmentation failed: {e}", file=sys.stderr)
        return 1
    finally:
        session.close_process()

    print(f"Found {len(polygons)} polygons")
    for i, polygon in enumerate(polygons):
        bounds = polygon.bounds()
        label = f" label={polygon.label}" if polygon.label is not None else ""
        print(f"  [{i}] {polygon.num_vertices} vertices, bounds {bounds}{label}")

    if args.output:
        payload = [
            {"xs": list(p.xs), "ys": list(p.ys), "label": p.label} for p in polygons
        ]
        args.output.write_text(json.dumps(payload, indent=2))
        print(f"Wrote {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
