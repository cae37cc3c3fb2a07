"""UTC timezone enforcement.

This module sets the TZ environment variable to UTC to ensure
consistent datetime behavior across all environments, and provides
the single clock used for job timestamps and age thresholds.
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime.

    Job tables store naive UTC timestamps, so every comparison against
    created_at/updated_at/started_at must use the same representation.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
