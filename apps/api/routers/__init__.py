"""Routers package."""

from . import (
    health,
    credits,
    enhance,
    admin,
)
