"""
vehicle.py - Automotive lookup tables for estimate review.

Keyword tables are matched on whole words of a normalized description
(see normalize.normalize_description), so "ac" never matches "replace".
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class VehicleSystem(str, Enum):
    ENGINE = "engine"
    TRANSMISSION = "transmission"
    BRAKES = "brakes"
    SUSPENSION = "suspension"
    ELECTRICAL = "electrical"
    BODY = "body"
    EXHAUST = "exhaust"
    STEERING = "steering"


# Checked in order; the first system with a keyword hit wins.
SYSTEM_KEYWORDS: tuple[tuple[VehicleSystem, tuple[str, ...]], ...] = (
    (
        VehicleSystem.ENGINE,
        (
            "engine", "motor", "piston", "valve", "timing", "camshaft", "crankshaft",
            "cylinder head", "manifold", "turbo", "supercharger", "radiator",
            "water pump", "thermostat", "cooling fan", "fuel pump", "injector",
            "fuel line", "fuel filter", "throttle body",
        ),
    ),
    (
        VehicleSystem.TRANSMISSION,
        ("transmission", "gearbox", "clutch", "torque converter", "differential", "axle", "driveshaft", "cv joint"),
    ),
    (
        VehicleSystem.BRAKES,
        ("brake", "brakes", "pad", "pads", "rotor", "caliper", "master cylinder", "abs"),
    ),
    (
        VehicleSystem.SUSPENSION,
        ("shock", "strut", "spring", "control arm", "ball joint", "sway bar", "stabilizer", "bushing", "wheel", "hub"),
    ),
    (
        VehicleSystem.ELECTRICAL,
        ("alternator", "starter", "battery", "wiring", "harness", "sensor", "ecu", "pcm", "module", "relay", "airbag"),
    ),
    (
        VehicleSystem.STEERING,
        ("steering", "rack", "pinion", "tie rod"),
    ),
    (
        VehicleSystem.EXHAUST,
        ("exhaust", "muffler", "catalytic converter", "resonator", "tailpipe"),
    ),
    (
        VehicleSystem.BODY,
        ("body", "panel", "bumper", "fender", "door", "hood", "trunk", "quarter panel", "mirror", "trim", "molding"),
    ),
)

# Upper bound on billed hours for one labor line, by system.
MAX_LABOR_HOURS: dict[Optional[VehicleSystem], float] = {
    VehicleSystem.ENGINE: 20.0,
    VehicleSystem.TRANSMISSION: 15.0,
    VehicleSystem.BRAKES: 4.0,
    VehicleSystem.SUSPENSION: 6.0,
    VehicleSystem.ELECTRICAL: 8.0,
    VehicleSystem.BODY: 12.0,
    VehicleSystem.EXHAUST: 3.0,
    VehicleSystem.STEERING: 5.0,
    None: 8.0,
}

OEM_INDICATORS = (
    "genuine", "oem", "factory", "toyota", "honda", "ford", "gm", "chevrolet", "nissan",
    "hyundai", "kia", "volkswagen", "bmw", "mercedes", "audi", "lexus", "acura", "infiniti",
)
AFTERMARKET_INDICATORS = (
    "aftermarket", "dorman", "beck arnley", "febi", "lemforder", "corteco",
    "gates", "dayco", "bosch", "denso", "ngk", "champion", "capa", "reman", "remanufactured",
)

# Components a typical collision rarely damages.
RARELY_DAMAGED_PARTS = (
    "transmission", "engine block", "differential", "catalytic converter", "ecu", "pcm", "airbag module",
)


def _has_phrase(normalized_description: str, phrases: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(phrase)}\b", normalized_description) for phrase in phrases)


def vehicle_system(normalized_description: str) -> Optional[VehicleSystem]:
    for system, keywords in SYSTEM_KEYWORDS:
        if _has_phrase(normalized_description, keywords):
            return system
    return None


def max_labor_hours(normalized_description: str) -> float:
    return MAX_LABOR_HOURS[vehicle_system(normalized_description)]


def part_origin(normalized_description: str) -> Optional[str]:
    """'oem', 'aftermarket' or None when the description does not say."""
    if _has_phrase(normalized_description, AFTERMARKET_INDICATORS):
        return "aftermarket"
    if _has_phrase(normalized_description, OEM_INDICATORS):
        return "oem"
    return None


def is_rarely_damaged(normalized_description: str) -> bool:
    return _has_phrase(normalized_description, RARELY_DAMAGED_PARTS)
