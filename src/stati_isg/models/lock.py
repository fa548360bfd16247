from __future__ import annotations

from pydantic import BaseModel, Field, StrictInt, StrictStr


class LockInfo(BaseModel):
    """Contents of a build or dev-server lock file."""

    pid: StrictInt = Field(gt=0)
    timestamp: StrictStr = Field(min_length=1)
    hostname: StrictStr = "unknown"
