"""
Pose Detector Simulator

Produces synthetic front/side keypoint frames for a body of a given height
and drives a running measurement service through a whole capture session:
start → frames → reconcile → (accept → mesh)

Usage:
    python -m measure_engine.simulator --height-cm 170
    python -m measure_engine.simulator --height-ft 5 --height-in 9 --jitter 2 --accept
"""

import argparse
import json
import random
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

import requests

from measure_engine.models import Keypoint, KeypointFrame, PoseType

# API Configuration
BASE_URL = "http://localhost:8000"
USER_ID = "demo_user"

# Body proportions as fractions of standing height
BODY_PROPORTIONS = {
    "neck_drop": 0.18,        # nose to shoulder line
    "shoulder_width": 0.265,
    "hip_width": 0.20,
    "torso": 0.30,            # shoulder line to hip line
    "upper_arm": 0.19,
    "forearm": 0.16,
    "thigh": 0.25,
    "shin": 0.22,
    "heel_spread": 0.10,
    "chest_depth": 0.14,
    "waist_depth": 0.12,
    "hip_depth": 0.15,
}

MARGIN_PX = 50


def _body_points(view: PoseType, height_px: float, cx: float, top: float) -> Dict[str, tuple]:
    p = {name: ratio * height_px for name, ratio in BODY_PROPORTIONS.items()}
    shoulder_y = top + p["neck_drop"]
    hip_y = shoulder_y + p["torso"]
    heel_y = top + height_px

    if view == PoseType.FRONT:
        half_shoulder = p["shoulder_width"] / 2
        half_hip = p["hip_width"] / 2
        half_heels = p["heel_spread"] / 2
        return {
            "nose": (cx, top),
            "left_shoulder": (cx + half_shoulder, shoulder_y),
            "right_shoulder": (cx - half_shoulder, shoulder_y),
            "left_elbow": (cx + half_shoulder, shoulder_y + p["upper_arm"]),
            "right_elbow": (cx - half_shoulder, shoulder_y + p["upper_arm"]),
            "left_wrist": (cx + half_shoulder, shoulder_y + p["upper_arm"] + p["forearm"]),
            "right_wrist": (cx - half_shoulder, shoulder_y + p["upper_arm"] + p["forearm"]),
            "left_hip": (cx + half_hip, hip_y),
            "right_hip": (cx - half_hip, hip_y),
            "left_knee": (cx + half_hip, hip_y + p["thigh"]),
            "right_knee": (cx - half_hip, hip_y + p["thigh"]),
            "left_ankle": (cx + half_hip, hip_y + p["thigh"] + p["shin"]),
            "right_ankle": (cx - half_hip, hip_y + p["thigh"] + p["shin"]),
            "left_heel": (cx + half_heels, heel_y),
            "right_heel": (cx - half_heels, heel_y),
        }

    # Side view: left and right joints overlap, depth markers span the body
    waist_y = shoulder_y + p["torso"] * 0.65
    return {
        "nose": (cx, top),
        "left_shoulder": (cx, shoulder_y),
        "right_shoulder": (cx, shoulder_y),
        "left_hip": (cx, hip_y),
        "right_hip": (cx, hip_y),
        "left_heel": (cx, heel_y),
        "right_heel": (cx, heel_y),
        "chest_front": (cx + p["chest_depth"] / 2, shoulder_y + p["torso"] * 0.25),
        "chest_back": (cx - p["chest_depth"] / 2, shoulder_y + p["torso"] * 0.25),
        "waist_front": (cx + p["waist_depth"] / 2, waist_y),
        "waist_back": (cx - p["waist_depth"] / 2, waist_y),
        "hip_front": (cx + p["hip_depth"] / 2, hip_y),
        "hip_back": (cx - p["hip_depth"] / 2, hip_y),
    }


def synthetic_frame(view: PoseType, height_cm: float, session_id: str, user_id: str,
                    frame_id: Optional[str] = None, pixels_per_cm: float = 5.0,
                    jitter: float = 0.0, confidence: float = 0.9, normalized: bool = False,
                    drop_joints=(), seed: Optional[int] = None,
                    captured_at: Optional[datetime] = None) -> KeypointFrame:
    """
    Keypoints of an upright body of the given height, as a detector would report them

    The nose-to-heels span is exactly height_cm * pixels_per_cm before jitter,
    so the calibrated scale factor is 1 / pixels_per_cm.
    """
    rng = random.Random(seed)
    height_px = height_cm * pixels_per_cm
    width = int(height_px + 2 * MARGIN_PX)
    height = int(height_px + 2 * MARGIN_PX)

    joints = {}
    for name, (x, y) in _body_points(view, height_px, width / 2, MARGIN_PX).items():
        if name in drop_joints:
            continue
        if jitter:
            x = min(max(x + rng.gauss(0, jitter), 0.0), width)
            y = min(max(y + rng.gauss(0, jitter), 0.0), height)
        if normalized:
            x, y = x / width, y / height
        joints[name] = Keypoint(x=x, y=y, confidence=confidence)

    return KeypointFrame(
        frame_id=frame_id or uuid.uuid4().hex,
        capture_session_id=session_id,
        user_id=user_id,
        view=view,
        width=width,
        height=height,
        normalized=normalized,
        joints=joints,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def frame_payload(frame: KeypointFrame) -> dict:
    """Request body for POST /sessions/{id}/frames"""
    return frame.model_dump(mode="json", exclude={"capture_session_id", "user_id"})


def post(path: str, user_id: str, body: Optional[dict] = None) -> dict:
    response = requests.post(f"{BASE_URL}{path}", json=body or {},
                             headers={"X-User-Id": user_id}, timeout=10)
    if response.status_code != 200:
        print(f"❌ {path} failed ({response.status_code}): {response.text}")
        sys.exit(1)
    return response.json()


def get(path: str, user_id: str) -> dict:
    response = requests.get(f"{BASE_URL}{path}", headers={"X-User-Id": user_id}, timeout=10)
    if response.status_code != 200:
        print(f"❌ {path} failed ({response.status_code}): {response.text}")
        sys.exit(1)
    return response.json()


def run_capture(args) -> dict:
    """Drive one capture session end to end against the service"""
    print(f"\n🎬 Starting capture session for {args.user_id}...")
    started = post("/sessions/start", args.user_id, {
        "height_cm": args.height_cm,
        "height_ft": args.height_ft,
        "height_in": args.height_in,
    })
    session_id = started["session_id"]
    height_cm = started["reference_height_cm"]
    print(f"✅ Session {session_id} (reference height {height_cm} cm)")

    for view in (PoseType.FRONT, PoseType.SIDE):
        for i in range(args.frames_per_view):
            frame = synthetic_frame(view, height_cm, session_id, args.user_id,
                                    pixels_per_cm=args.pixels_per_cm, jitter=args.jitter,
                                    confidence=args.confidence,
                                    seed=None if args.seed is None else args.seed + i)
            outcome = post(f"/sessions/{session_id}/frames", args.user_id, frame_payload(frame))
            if outcome["accepted"]:
                print(f"   📷 {view.value} frame {i + 1}: accepted")
            else:
                rejection = outcome["rejection"]
                print(f"   ⚠️  {view.value} frame {i + 1}: rejected ({rejection['reason']} {rejection.get('joint') or ''})")

    print("\n📐 Reconciling views...")
    result = post(f"/sessions/{session_id}/reconcile", args.user_id)
    print(json.dumps(result["measurements"], indent=2))
    print(f"   is_accurate: {result['is_accurate']}  conflicts: {result['conflicts'] or 'none'}")
    if result["missing"]:
        print(f"   ⚠️  not measured: {', '.join(result['missing'])}")

    if not args.accept:
        print(f"\n⏸️  Session left in {result['state']}; accept with POST /sessions/{session_id}/accept")
        return result

    accepted = post(f"/sessions/{session_id}/accept", args.user_id)
    print("\n✅ Measurements accepted")
    if not accepted["persisted"]:
        print("   ⚠️  Accepted set was not stored; check the service database")

    mesh = get(f"/sessions/{session_id}/mesh", args.user_id)
    print(f"\n🧍 Mesh parameters ({mesh['mesh']}):")
    for axis, value in mesh["params"].items():
        print(f"   {axis:<18} {value:.3f}")
    for warning in mesh["warnings"]:
        print(f"   ⚠️  {warning['axis']}: {warning['value_cm']:.1f} cm outside "
              f"{warning['min_physical']}-{warning['max_physical']}")
    return mesh


def main():
    global BASE_URL

    parser = argparse.ArgumentParser(description="Simulate a pose detector feeding the measurement service")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--user-id", default=USER_ID)
    parser.add_argument("--height-cm", type=float)
    parser.add_argument("--height-ft", type=float)
    parser.add_argument("--height-in", type=float)
    parser.add_argument("--frames-per-view", type=int, default=1)
    parser.add_argument("--pixels-per-cm", type=float, default=5.0)
    parser.add_argument("--jitter", type=float, default=0.0, help="Gaussian pixel noise per joint")
    parser.add_argument("--confidence", type=float, default=0.9)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--accept", action="store_true", help="Accept the result and fetch mesh parameters")
    args = parser.parse_args()

    BASE_URL = args.base_url.rstrip("/")

    try:
        requests.get(f"{BASE_URL}/health", timeout=5)
    except requests.exceptions.ConnectionError:
        print(f"❌ Cannot reach measurement service at {BASE_URL}")
        sys.exit(1)

    run_capture(args)


if __name__ == "__main__":
    main()
