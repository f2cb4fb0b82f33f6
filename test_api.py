"""
test_api.py - HTTP Layer Tests

Exercises /health and /compare through FastAPI's TestClient.

Usage: python test_api.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fastapi.testclient import TestClient

from api import app
from check_runner import run_checks

client = TestClient(app)

OIL_50 = {"description": "Engine Oil Change", "quantity": 1, "unit_price": 50, "line_total": 50}
OIL_75 = {"description": "Engine Oil Change", "quantity": 1, "unit_price": 75, "line_total": 75}


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_compare_scenario_a():
    response = client.post("/compare", json={"original": [OIL_50], "supplement": [OIL_75]})
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["totals"]["net_change"] == "25.00"
    matched = payload["reconciliation"]["matched"]
    assert len(matched) == 1
    assert matched[0]["variance"]["total_pct"] == "50.00"
    assert "report" not in payload


def test_compare_empty_supplement():
    response = client.post("/compare", json={"original": [OIL_50]})
    assert response.status_code == 200
    assert len(response.json()["reconciliation"]["removed"]) == 1


def test_compare_with_report_and_config():
    response = client.post(
        "/compare",
        json={
            "original": [OIL_50],
            "supplement": [OIL_75],
            "config": {"fuzzy_threshold": 0.8, "enable_fuzzy_matching": False},
            "include_report": True,
        },
    )
    assert response.status_code == 200
    assert "Supplement Review" in response.json()["report"]


def test_negative_quantity_is_400():
    bad = {"description": "Engine Oil Change", "quantity": -2, "unit_price": 50}
    response = client.post("/compare", json={"original": [OIL_50], "supplement": [bad]})
    assert response.status_code == 400
    assert "quantity" in response.json()["detail"]


def test_invalid_config_is_422():
    response = client.post(
        "/compare",
        json={"original": [OIL_50], "supplement": [OIL_75], "config": {"fuzzy_threshold": 2}},
    )
    assert response.status_code == 422


def test_unknown_config_key_is_422():
    response = client.post(
        "/compare",
        json={"original": [OIL_50], "supplement": [OIL_75], "config": {"fuzzy_treshold": 0.7}},
    )
    assert response.status_code == 422


def test_malformed_body_is_422():
    response = client.post("/compare", json={"original": "Engine Oil Change"})
    assert response.status_code == 422


if __name__ == "__main__":
    run_checks(globals(), "HTTP API Tests")
