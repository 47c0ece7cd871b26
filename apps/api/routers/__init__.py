"""Routers package."""

from . import (
    health,
    wallet,
    cron,
)
