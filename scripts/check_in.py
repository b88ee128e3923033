"""
Face-verified check-in from a webcam.

USAGE:
    QATTEND_ACCESS_TOKEN=<supabase access token> \
    python scripts/check_in.py <qr token> --camera 0

Fetches the caller's face profile, waits for a usable face, verifies it
locally and, on a match, submits the QR token.
"""
import argparse
import asyncio
import os
import sys

import cv2

from qattend.client import QAttendClient
from qattend.errors import QAttendError
from qattend.face_engine.pipeline import FacePipeline
from qattend.face_engine.runtime import get_runtime
from qattend.session import SessionInfo, VerificationSessionController


async def run(token: str, camera_index: int, attempts: int, api_url=None) -> int:
    client = QAttendClient(os.environ["QATTEND_ACCESS_TOKEN"], base_url=api_url)
    try:
        profile = client.fetch_face_profile()
        runtime = get_runtime().initialize()
    except QAttendError as e:
        print(f"❌ {e.message}")
        return 1

    controller = VerificationSessionController(FacePipeline(runtime))
    controller.open(SessionInfo(class_id=token.split(":")[0], token=token),
                    lambda: client.verify_qr_token(token))

    camera = cv2.VideoCapture(camera_index)
    if not camera.isOpened():
        print(f"❌ Could not open camera {camera_index}")
        return 1

    def capture():
        ok, frame = camera.read()
        return frame if ok else None

    try:
        for attempt in range(1, attempts + 1):
            outcome = await controller.capture_and_verify(capture, profile)
            print(f"[{attempt}/{attempts}] {outcome.message}")
            if outcome.completed:
                result = outcome.result or {}
                print(f"✅ {result.get('message', 'Attendance marked')}")
                return 0
            if outcome.accepted and not outcome.retryable:
                return 1
            await asyncio.sleep(1.0)
    finally:
        camera.release()
        controller.close()

    print("❌ Verification failed. Try again or contact your instructor.")
    return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Face-verified QR check-in.")
    parser.add_argument("token")
    parser.add_argument("--camera", type=int, default=0)
    parser.add_argument("--attempts", type=int, default=5)
    parser.add_argument("--api-url", default=None)
    args = parser.parse_args(argv)

    if not os.getenv("QATTEND_ACCESS_TOKEN"):
        print("❌ Error: QATTEND_ACCESS_TOKEN is not set.")
        return 1
    return asyncio.run(run(args.token, args.camera, args.attempts, args.api_url))


if __name__ == "__main__":
    sys.exit(main())
