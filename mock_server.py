"""Local stand-in for the remote verification API.

Serves the same endpoints the engine consumes so the CLI can be exercised
without the real service:

  POST /api/verify/batch                         NDJSON event stream
  GET  /api/verify/status/{job_id}               Status snapshot
  GET  /api/results/batches                      Known batch ids
  GET  /api/results/batch/{job_id}               Per-email results
  GET  /api/results/export/{job_id}/{category}   CSV export
  GET  /api/statistics/category                  Lifetime category counts
  GET  /health                                   Health check

Run with ``uvicorn mock_server:app --port 5000``. Categories are derived
deterministically from the address, not from any real check.
"""

import asyncio
import csv
import hashlib
import io
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from engine.models import Category

logger = logging.getLogger("verifystream.mock_server")

RESULT_DELAY_SECONDS = float(os.environ.get("VERIFYSTREAM_MOCK_DELAY_SECONDS", "0.0"))
MAX_BATCH_SIZE = int(os.environ.get("VERIFYSTREAM_MOCK_MAX_BATCH_SIZE", "10000"))

_ROLE_PREFIXES = ("info", "admin", "sales", "support", "contact", "noreply", "no-reply")

app = FastAPI(
    title="VerifyStream mock API",
    description="Deterministic stand-in for the batch verification service",
    version="0.1.0",
)


class BatchRequest(BaseModel):
    emails: list[str]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def categorize(email: str) -> Category:
    """Stable pseudo-verdict for an address."""
    local, _, domain = email.lower().partition("@")
    if not domain or "invalid" in local or "bounce" in local or domain.endswith(".invalid"):
        return Category.invalid
    if local.startswith(_ROLE_PREFIXES):
        return Category.risky
    bucket = int(hashlib.sha256(email.lower().encode("utf-8")).hexdigest()[:8], 16) % 10
    if bucket < 7:
        return Category.valid
    if bucket < 9:
        return Category.invalid
    return Category.risky


class JobStore:
    """In-memory record of submitted jobs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, dict] = {}

    def create(self, emails: list[str]) -> dict:
        job = {
            "job_id": uuid.uuid4().hex,
            "status": "started",
            "start_time": _now(),
            "end_time": None,
            "total_emails": len(emails),
            "verified_emails": 0,
            "results": {c.value: 0 for c in Category},
            "email_results": {},
        }
        with self._lock:
            self._jobs[job["job_id"]] = job
        return job

    def record(self, job_id: str, email: str, category: Category) -> dict:
        row = {"email": email, "category": category.value, "provider": "mock", "timestamp": _now()}
        with self._lock:
            job = self._jobs[job_id]
            job["status"] = "running"
            job["verified_emails"] += 1
            job["results"][category.value] += 1
            job["email_results"][email] = row
        return row

    def complete(self, job_id: str) -> dict:
        with self._lock:
            job = self._jobs[job_id]
            job["status"] = "completed"
            job["end_time"] = _now()
            return dict(job)

    def get(self, job_id: str) -> Optional[dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            return json.loads(json.dumps(job)) if job else None

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def totals(self) -> dict[str, int]:
        with self._lock:
            out = {c.value: 0 for c in Category}
            for job in self._jobs.values():
                for key, count in job["results"].items():
                    out[key] += count
            return out

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()


_JOBS = JobStore()


def _line(payload: dict) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


async def _stream_job(job_id: str, emails: list[str]):
    yield _line({"job_id": job_id, "status": "started", "total_emails": len(emails)})
    for email in emails:
        if RESULT_DELAY_SECONDS > 0:
            await asyncio.sleep(RESULT_DELAY_SECONDS)
        yield _line(_JOBS.record(job_id, email, categorize(email)))
    job = _JOBS.complete(job_id)
    yield _line({
        "job_id": job_id,
        "status": "completed",
        "total_emails": job["total_emails"],
        "results": job["results"],
    })
    logger.info("Mock job %s completed (%d emails)", job_id, len(emails))


def _get_job_or_404(job_id: str) -> dict:
    job = _JOBS.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return job


@app.post("/api/verify/batch")
async def verify_batch_endpoint(request: BatchRequest):
    """Start a job and stream one JSON record per line."""
    if not request.emails:
        raise HTTPException(status_code=400, detail="No emails provided")
    if len(request.emails) > MAX_BATCH_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Batch size exceeds maximum of {MAX_BATCH_SIZE}",
        )
    job = _JOBS.create(request.emails)
    return StreamingResponse(
        _stream_job(job["job_id"], request.emails),
        media_type="application/x-ndjson",
    )


@app.get("/api/verify/status/{job_id}")
async def status_endpoint(job_id: str):
    job = _get_job_or_404(job_id)
    return {
        "job_id": job_id,
        "status": job["status"],
        "total_emails": job["total_emails"],
        "verified_emails": job["verified_emails"],
        "results": job["results"],
        "timestamp": job["start_time"],
    }


@app.get("/api/results/batches")
async def batches_endpoint():
    ids = _JOBS.ids()
    return {"batch_ids": ids, "count": len(ids)}


@app.get("/api/results/batch/{job_id}")
async def batch_results_endpoint(job_id: str):
    return _get_job_or_404(job_id)


@app.get("/api/results/export/{job_id}/{category}")
async def export_endpoint(job_id: str, category: str):
    if category not in ("all", "valid", "invalid", "risky"):
        raise HTTPException(status_code=400, detail=f"Unknown category {category}")
    job = _get_job_or_404(job_id)

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["email", "category", "provider", "timestamp"])
    for row in job["email_results"].values():
        if category != "all" and row["category"] != category:
            continue
        writer.writerow([row["email"], row["category"], row["provider"], row["timestamp"]])

    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{job_id}_{category}.csv"'},
    )


@app.get("/api/statistics/category")
async def category_stats_endpoint():
    totals = _JOBS.totals()
    return {
        "categories": {
            "valid": totals["valid"],
            "invalid": totals["invalid"],
            "risky": totals["risky"] + totals["custom"],
            "total": sum(totals.values()),
        },
        "timestamp": _now(),
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "verifystream-mock",
        "version": "0.1.0",
    }
