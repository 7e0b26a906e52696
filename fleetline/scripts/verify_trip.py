#!/usr/bin/env python3
from __future__ import annotations

import argparse
import math
import os
import sys
import uuid
from pathlib import Path

import requests
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv(PROJECT_ROOT / ".env")

from fleetline.logic.geo import EARTH_RADIUS_METERS

PICKUP = {"lat": 24.7136, "lng": 46.6753, "address": "Verify pickup"}
DELIVERY = {"lat": 21.4858, "lng": 39.1925, "address": "Verify delivery"}


def _headers(actor_id: str, role: str) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


def _north_of(point: dict, meters: float) -> dict:
    return {"lat": point["lat"] + math.degrees(meters / EARTH_RADIUS_METERS), "lng": point["lng"]}


def _call(method: str, url: str, headers: dict, json: dict | None = None) -> dict:
    response = requests.request(method, url, headers=headers, json=json, timeout=20)
    response.raise_for_status()
    return response.json()


def run_test(base_url: str) -> int:
    run = uuid.uuid4().hex[:8]
    shipper = _headers(f"verify-shipper-{run}", "shipper")
    carrier_a = _headers(f"verify-carrier-a-{run}", "carrier")
    carrier_b = _headers(f"verify-carrier-b-{run}", "carrier")
    carrier_b_id = carrier_b["X-Actor-Id"]

    print("🚀 Starting trip verification...")
    # Register the carrier's feed before anything happens
    _call("GET", f"{base_url}/api/notifications", carrier_b)

    job = _call("POST", f"{base_url}/api/jobs", shipper, {
        "pickup": PICKUP,
        "delivery": DELIVERY,
        "requested_date": "2026-11-02",
        "weight": "12000",
        "equipment_type": "Dry Van",
    })
    job_id = job["id"]
    print(f"✅ Job #{job_id} created ({job['status']})")

    bid_a = _call("POST", f"{base_url}/api/jobs/{job_id}/bids", carrier_a, {"price": "100"})["bid_id"]
    bid_b = _call("POST", f"{base_url}/api/jobs/{job_id}/bids", carrier_b, {"price": "90"})["bid_id"]
    accepted = _call("POST", f"{base_url}/api/jobs/{job_id}/bids/{bid_b}/accept", shipper)["job"]
    bids = {b["id"]: b["status"] for b in _call("GET", f"{base_url}/api/jobs/{job_id}/bids", shipper)["bids"]}
    if accepted["accepted_bid_id"] != bid_b or bids != {bid_a: "rejected", bid_b: "accepted"}:
        print(f"❌ FAILURE: unexpected award state job={accepted} bids={bids}")
        return 1
    print(f"✅ Bid #{bid_b} accepted, bid #{bid_a} rejected")

    print("📡 Reporting approach to pickup: 600m, 400m, 300m, 600m, 400m")
    for meters in (600, 400, 300, 600, 400):
        point = _north_of(PICKUP, meters)
        _call("PUT", f"{base_url}/api/carriers/{carrier_b_id}/position", carrier_b, {**point, "online": True})

    notifications = _call("GET", f"{base_url}/api/notifications", carrier_b)["notifications"]
    proximity = [n for n in notifications if n["kind"] == "proximity.reached" and n["job_id"] == job_id]
    if len(proximity) != 2:
        print(f"❌ FAILURE: expected 2 proximity alerts, got {len(proximity)}")
        return 1
    print("✅ Two pickup proximity alerts (one per approach)")

    for expected_from, to in (("bid_accepted", "in_transit"), ("in_transit", "completed")):
        _call("POST", f"{base_url}/api/jobs/{job_id}/advance", carrier_b, {"expected_from": expected_from, "to": to})
    final = _call("GET", f"{base_url}/api/jobs/{job_id}", shipper)
    if final["status"] != "completed":
        print(f"❌ FAILURE: job ended in {final['status']}")
        return 1

    print(f"🔥 SUCCESS: job #{job_id} completed")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Drive one job from bid to delivery against a running API.")
    parser.add_argument("--base-url", default=os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000"))
    args = parser.parse_args()

    try:
        return run_test(args.base_url.rstrip("/"))
    except requests.RequestException as exc:
        print(f"❌ Verification failed: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
