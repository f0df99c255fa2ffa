"""API routers"""

from . import definitions, instances

__all__ = ["definitions", "instances"]
