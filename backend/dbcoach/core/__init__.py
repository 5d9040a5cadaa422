"""
DB Coach - Core Package
=======================

Configuration, persistence, live events and the streaming pipeline.
"""

from dbcoach.core.config import settings
from dbcoach.core.database import AsyncSessionLocal, Base

__all__ = ["AsyncSessionLocal", "Base", "settings"]
