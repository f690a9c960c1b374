"""
API routers
"""

from . import workflows, runs, suspensions, monitoring

__all__ = ["workflows", "runs", "suspensions", "monitoring"]
