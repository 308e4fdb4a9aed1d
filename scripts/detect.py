#!/usr/bin/env python3
"""
AOG Detection Script

Run detection and parsing with an AND-OR grammar on a saved feature pyramid.

Usage:
    # Detections above the configured threshold
    python scripts/detect.py --grammar configs/toy_grammar.yaml --pyramid pyramid.npz

    # Override settings, keep every raw detection
    python scripts/detect.py --grammar g.yaml --pyramid p.npz --config configs/default.yaml \
        --threshold -0.5 --max-detections 10 --extended --output results.json
"""

import argparse
import json
import sys
import time
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from features.pyramid import FeaturePyramid
from grammar.aog import build_grammar
from inference.config import InferenceConfig, load_config
from inference.engine import InferenceEngine


def parse_args():
    parser = argparse.ArgumentParser(description="AOG Detection")
    parser.add_argument(
        "--grammar", "-g",
        type=str,
        required=True,
        help="Path to grammar YAML file",
    )
    parser.add_argument(
        "--pyramid", "-p",
        type=str,
        required=True,
        help="Path to feature pyramid .npz file",
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config YAML with an 'inference' section",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Score threshold (overrides config)",
    )
    parser.add_argument(
        "--max-detections",
        type=int,
        default=None,
        help="Maximum number of detections (overrides config)",
    )
    parser.add_argument(
        "--extended",
        action="store_true",
        help="Skip duplicate suppression and report every raw detection",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Write parse trees to this JSON file",
    )
    return parser.parse_args()


def main():
    args = parse_args()

    config = load_config(args.config) if args.config else {}
    inference_config = InferenceConfig.from_dict(config.get('inference', {}))

    grammar = build_grammar(load_config(args.grammar))
    pyramid = FeaturePyramid.load(args.pyramid)

    print(f"Grammar: {len(grammar)} nodes, root {grammar.root}")
    print(f"Pyramid: {pyramid}")

    engine = InferenceEngine(grammar, inference_config)

    start = time.time()
    if args.extended or inference_config.extended:
        trees, detections = engine.run_detection_ext(pyramid, args.threshold, args.max_detections)
        print(f"Raw detections: {len(detections)}")
    else:
        trees = engine.run_detection(pyramid, args.threshold, args.max_detections)
    elapsed = time.time() - start

    print(f"Found {len(trees)} detections in {elapsed:.3f}s")
    for i, tree in enumerate(trees):
        x1, y1, x2, y2 = tree.box
        print(f"  [{i}] score={tree.score:.4f} level={tree.level} "
              f"box=({x1:.1f}, {y1:.1f}, {x2:.1f}, {y2:.1f}) nodes={len(tree)}")

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump([tree.to_dict() for tree in trees], f, indent=2)
        print(f"Saved to {output_path}")


if __name__ == "__main__":
    main()
