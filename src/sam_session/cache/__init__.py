"""Spatial encoding cache.

This package tracks which part of the image the engine has encoded and
decides when a prompt requires a new encoding:
- EncodedRegion: the encoded rectangle and its trusted inner region
- ReencodeDecisionEngine: reuse-or-re-encode policy for points and boxes

Example:
    from sam_session.cache import EncodedRegion, ReencodeDecisionEngine

    region = EncodedRegion.whole_image(image)
    policy = ReencodeDecisionEngine(region.image_width, region.image_height)
    decision = policy.evaluate_points(prompt, region)
"""

from sam_session.cache.policy import ReencodeDecision, ReencodeDecisionEngine
from sam_session.cache.region import EncodedRegion

__all__ = [
    "EncodedRegion",
    "ReencodeDecision",
    "ReencodeDecisionEngine",
]
