"""Schema package for the directive pipeline: declarative base, enums, models, migrations."""

from __future__ import annotations

import logging

from backend.db.base import Base
from backend.db import enums, models

logger = logging.getLogger(__name__)

__all__ = ["Base", "enums", "models"]
