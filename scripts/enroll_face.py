"""
Enroll (or re-enroll) a face profile from a folder of photos.

USAGE:
    QATTEND_ACCESS_TOKEN=<supabase access token> \
    python scripts/enroll_face.py path/to/photos --api-url http://localhost:8000

Every image with one usable face contributes one sample. Photos never leave
this machine; only the embeddings are uploaded.
"""
import argparse
import os
import sys
from pathlib import Path
from typing import List

import cv2

from qattend.client import QAttendClient
from qattend.errors import QAttendError
from qattend.face_engine.pipeline import FaceEmbedding, FacePipeline
from qattend.face_engine.runtime import get_runtime

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")


def _get_image_paths(folder: Path) -> List[Path]:
    return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)


def collect_samples(pipeline: FacePipeline, folder: Path) -> List[FaceEmbedding]:
    samples = []
    for path in _get_image_paths(folder):
        img_bgr = cv2.imread(str(path))
        if img_bgr is None:
            print(f"❌ Failed to read {path.name}")
            continue
        try:
            sample = pipeline.extract_face_embedding(img_bgr)
        except QAttendError as e:
            print(f"⚠️ {path.name}: {e.message}")
            continue
        finally:
            del img_bgr
        print(f"✅ {path.name}: quality {sample.quality:.2f}")
        samples.append(sample)
    return samples


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Enroll a face profile from photos.")
    parser.add_argument("folder", type=Path)
    parser.add_argument("--api-url", default=None)
    parser.add_argument("--min-samples", type=int, default=3)
    args = parser.parse_args(argv)

    token = os.getenv("QATTEND_ACCESS_TOKEN")
    if not token:
        print("❌ Error: QATTEND_ACCESS_TOKEN is not set.")
        return 1
    if not args.folder.is_dir():
        print(f"❌ Error: {args.folder} is not a directory.")
        return 1

    try:
        runtime = get_runtime().initialize()
    except QAttendError as e:
        print(f"❌ {e.message}")
        return 1
    pipeline = FacePipeline(runtime)

    samples = collect_samples(pipeline, args.folder)
    if len(samples) < args.min_samples:
        print(f"❌ Only {len(samples)} usable photos, need at least {args.min_samples}.")
        return 1

    client = QAttendClient(token, base_url=args.api_url)
    try:
        client.store_face_profile([s.as_list() for s in samples], [s.quality for s in samples])
    except QAttendError as e:
        print(f"❌ Upload failed: {e.message}")
        return 1

    print(f"🎉 Face profile stored with {len(samples)} samples.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
