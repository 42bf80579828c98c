from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import time

import numpy as np
import yaml

from exporters import LABEL_ORDERS, labeled_volume
from hkmeans import HierarchicalSegmenter
from io_bridge import IOConfig, load_volume, save_regions
from log_config import configure_logging
from volume import AXES, ConfigurationError

logger = logging.getLogger("object_finder")


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def _optional_float(v):
    return None if v is None else float(v)


def _optional_int(v):
    return None if v is None else int(v)


def _selection(v):
    # None (all), a single index, or a list of indices
    if v is None or isinstance(v, int):
        return v
    return [int(i) for i in v]


def build_segmenter(cfg: dict) -> HierarchicalSegmenter:
    return HierarchicalSegmenter(
        num_classes=int(cfg.get("num_classes", 10)),
        pre_filter_sigma=float(cfg.get("pre_filter_sigma", 0.0)),
        min_size=int(cfg.get("min_size", 100)),
        max_size=int(cfg.get("max_size", 1600)),
        min_intensity=_optional_float(cfg.get("min_intensity")),
        connectivity=_optional_int(cfg.get("connectivity")),
        strict_filter=bool(cfg.get("strict_filter", False)),
        n_bins=int(cfg.get("n_bins", 255)),
    )


def _git_rev():
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def run(cfg: dict) -> dict:
    """Segment the configured input and write results; returns the metadata dict."""
    if "input_path" not in cfg:
        raise ConfigurationError("config must set input_path")
    spacing = tuple(float(s) for s in cfg.get("spacing", [1.0, 1.0, 1.0]))
    io_cfg = IOConfig(
        input_path=str(cfg["input_path"]),
        array_key=cfg.get("array_key"),
        axes=str(cfg.get("axes", AXES)),
        spacing=spacing,
    )
    seg = build_segmenter(cfg)
    label_order = str(cfg.get("label_order", "arbitrary")).lower()
    if label_order not in LABEL_ORDERS:
        raise ConfigurationError(f"label_order must be one of {LABEL_ORDERS}")

    t0 = time.time()
    stack = load_volume(io_cfg)
    t_load = time.time()
    logger.info("loaded %s shape(t,c,z,y,x)=%s", io_cfg.input_path, stack.shape)

    def report(frac: float) -> None:
        logger.info("progress %.0f%%", 100.0 * frac)

    regions = seg.segment(stack,
                          frames=_selection(cfg.get("frames")),
                          channels=_selection(cfg.get("channels")),
                          spacing=io_cfg.spacing,
                          progress=report,
                          workers=int(cfg.get("workers", 1)))
    t_seg = time.time()

    out_dir = cfg.get("output_dir", "./hkmeans_out")
    os.makedirs(out_dir, exist_ok=True)
    regions_path = os.path.join(out_dir, "regions.npz")
    save_regions(regions_path, regions, stack.shape, spacing)

    labels_name = None
    if cfg.get("write_labels", False):
        labels = labeled_volume(regions, stack.shape, order=label_order,
                                descending=bool(cfg.get("label_descending", False)))
        labels_name = "labels.npy"
        np.save(os.path.join(out_dir, labels_name), labels)
    t_done = time.time()

    per_frame = {}
    for r in regions:
        per_frame[r.t] = per_frame.get(r.t, 0) + 1
    meta = {
        "input": {
            "path": io_cfg.input_path,
            "array_key": io_cfg.array_key,
            "axes": io_cfg.axes,
            "shape_tczyx": [int(n) for n in stack.shape],
            "spacing": list(spacing),
        },
        "segmentation": {
            "num_classes": seg.num_classes,
            "pre_filter_sigma": seg.pre_filter_sigma,
            "min_size": seg.min_size,
            "max_size": seg.max_size,
            "min_intensity": seg.min_intensity,
            "connectivity": seg.connectivity,
            "strict_filter": seg.strict_filter,
            "n_bins": seg.n_bins,
        },
        "K": len(regions),
        "regions_per_frame": {str(t): n for t, n in sorted(per_frame.items())},
        "times": {
            "load": float(t_load - t0),
            "segment": float(t_seg - t_load),
            "write": float(t_done - t_seg),
        },
        "git_rev": _git_rev(),
        "config": cfg,
        "output_npz": os.path.basename(regions_path),
        "output_labels": labels_name,
    }
    with open(os.path.join(out_dir, "regions.meta.json"), "w") as f:
        json.dump(meta, f, indent=2)

    logger.info("times: load=%.2fs segment=%.2fs write=%.2fs K=%d",
                t_load - t0, t_seg - t_load, t_done - t_seg, len(regions))
    return meta


def main(argv=None):
    ap = argparse.ArgumentParser(description="Hierarchical K-means object detection.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--workers", type=int, default=None, help="threads over (frame, channel) pairs")
    ap.add_argument("--strict-filter", action="store_true",
                    help="Abort when the pre-filter kernel exceeds an image axis.")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    if args.workers is not None:
        cfg["workers"] = args.workers
    if args.strict_filter:
        cfg["strict_filter"] = True
    configure_logging(args.log_level or cfg.get("log_level", "INFO"), cfg.get("log_file"))
    run(cfg)


if __name__ == "__main__":
    main()
