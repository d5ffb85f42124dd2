"""Runtime configuration read from the environment."""

import os
from pathlib import Path

API_BASE_URL = os.environ.get("VERIFYSTREAM_API_BASE_URL", "http://localhost:5000/api").rstrip("/")
API_KEY = os.environ.get("VERIFYSTREAM_API_KEY", "")

POLL_INTERVAL_SECONDS = float(os.environ.get("VERIFYSTREAM_POLL_INTERVAL_SECONDS", "3.0"))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("VERIFYSTREAM_REQUEST_TIMEOUT_SECONDS", "30.0"))
# Stream reads have no total deadline: a stalled producer stalls the run.
STREAM_CONNECT_TIMEOUT_SECONDS = float(os.environ.get("VERIFYSTREAM_STREAM_CONNECT_TIMEOUT_SECONDS", "30.0"))

NAMES_KEY = "verification_batch_names"
NAMES_PATH = Path(
    os.environ.get(
        "VERIFYSTREAM_NAMES_PATH",
        str(Path.home() / ".verifystream" / f"{NAMES_KEY}.json"),
    )
)
EXPORT_DIR = Path(os.environ.get("VERIFYSTREAM_EXPORT_DIR", "."))

EXPORT_CATEGORIES = ("all", "valid", "invalid", "risky")


def auth_headers(api_key: str = "") -> dict[str, str]:
    key = api_key or API_KEY
    return {"X-API-Key": key} if key else {}
