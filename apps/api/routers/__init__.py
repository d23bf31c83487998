"""Routers package."""

from . import (
    health,
    enhance,
    credits,
    invite,
    billing,
)
