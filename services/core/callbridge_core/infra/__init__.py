"""Infrastructure for CallBridge Core."""

from callbridge_core.infra.db import Database

__all__ = ["Database"]
