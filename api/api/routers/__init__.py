"""API router modules for the TravelPoint control plane."""

from __future__ import annotations

from api.routers import (
    admin,
    billing,
    bookings,
    groups,
    health,
    team,
)

__all__ = [
    "admin",
    "billing",
    "bookings",
    "groups",
    "health",
    "team",
]
