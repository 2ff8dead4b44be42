"""Top-level package for the AMP relay: agent message routing, relay queueing and federation."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
