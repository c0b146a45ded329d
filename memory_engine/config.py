"""Runtime configuration, read once from the environment."""

import os
from pathlib import Path
from typing import Any, Dict

MEMORY_BASE_PATH = Path(os.getenv("MEMORY_BASE_PATH", "memories"))

AUDIT_LOG_NAME = "audit.log"
ARCHIVE_DIR_NAME = "archive"
RECORD_EXTENSION = ".md"

SERVER_HOST = os.getenv("MEMORY_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("MEMORY_PORT", "3000"))
SERVER_TRANSPORT = os.getenv("MEMORY_TRANSPORT", "sse")
LOG_LEVEL = os.getenv("MEMORY_LOG_LEVEL", "INFO")

MEMORY_CONFIG: Dict[str, Dict[str, Any]] = {
    "limits": {
        "max_hot_count": int(os.getenv("MEMORY_MAX_HOT_COUNT", "50")),
    },
    "retention": {
        "P1_max_age_days": 90,
        "P2_max_age_days": 30,
    },
    "eviction": {
        "interval_hours": float(os.getenv("MEMORY_EVICTION_INTERVAL_HOURS", "24")),
    },
    "search": {
        # Fraction of a term's length that may differ and still match
        "threshold": 0.3,
    },
}
