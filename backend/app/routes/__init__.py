"""Aggregate import for all API route modules."""

from . import (
    auth,
    funds,
    pledges,
    settings,
)

__all__ = [
    "auth",
    "funds",
    "pledges",
    "settings",
]
