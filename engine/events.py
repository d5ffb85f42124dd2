"""Classify decoded stream lines into verification events.

The producer does not tag its records. The kind is inferred from which
fields are present:

- ``job_id`` with ``status == "started"``   -> Started
- ``job_id`` with ``status == "completed"`` -> Completed
- ``email``                                 -> ResultRecord
- anything else                             -> dropped

Records that look like one kind but fail to validate as it are dropped
too, rather than being bound to whatever fields happen to be there.
"""

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from .models import CategoryTotals, Completed, ResultRecord, Started, VerificationEvent

logger = logging.getLogger("verifystream.events")


def classify_line(line: str) -> Optional[VerificationEvent]:
    """Parse one NDJSON line. Returns None for unparseable or unknown records."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning("Skipping unparseable stream line (%s): %.120s", e, line)
        return None
    return classify_record(data)


def classify_record(data: Any) -> Optional[VerificationEvent]:
    if not isinstance(data, dict):
        logger.warning("Skipping non-object stream record: %.120r", data)
        return None

    try:
        if "job_id" in data:
            status = data.get("status")
            if status == "started":
                return Started(batch_id=str(data["job_id"]))
            if status == "completed":
                return Completed(
                    batch_id=str(data["job_id"]),
                    totals=CategoryTotals.model_validate(data.get("results") or {}),
                    total_emails=data.get("total_emails"),
                )
            logger.debug("Ignoring job record with status=%r", status)
            return None

        if "email" in data:
            return ResultRecord.model_validate(data)
    except ValidationError as e:
        logger.warning("Dropping malformed stream record: %s", e.errors()[0].get("msg", e))
        return None

    logger.warning("Dropping unrecognized stream record with keys %s", sorted(data))
    return None
