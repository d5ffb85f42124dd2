from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import requests

from engine import config
from engine.errors import VerifierApiError
from engine.models import BatchDetails, CategoryStats

logger = logging.getLogger("verifystream.results")

_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.I)


class ResultsApiClient:
    """Blocking client for the results, export and statistics endpoints.

    These calls are short request/response exchanges; async callers run
    them through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        api_key: str = "",
        *,
        timeout_seconds: float = config.REQUEST_TIMEOUT_SECONDS,
        request_fn=None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._request_fn = request_fn or requests.request
        self._headers = config.auth_headers(api_key)

    def _request(self, method: str, path: str, *, params: Optional[dict[str, str]] = None):
        url = f"{self._base_url}{path}"
        resp = self._request_fn(
            method,
            url,
            headers=dict(self._headers),
            params=params,
            timeout=self._timeout_seconds,
        )
        if not (200 <= resp.status_code < 300):
            # Never include headers (api key) in error messages.
            text = getattr(resp, "text", "")
            raise VerifierApiError(resp.status_code, text[:500])
        return resp

    def _get_json(self, path: str) -> Any:
        return self._request("GET", path).json()

    def list_batches(self) -> list[str]:
        """Ids of every batch the service knows about."""
        payload = self._get_json("/results/batches") or {}
        batch_ids = payload.get("batch_ids") or []
        return [str(b) for b in batch_ids]

    def get_batch_results(self, batch_id: str) -> BatchDetails:
        """Full result listing for one batch, including per-email rows."""
        payload = self._get_json(f"/results/batch/{quote(batch_id, safe='')}")
        email_results = payload.get("email_results") or {}
        # Older payloads key rows by email without repeating it in the row.
        for email, row in email_results.items():
            if isinstance(row, dict):
                row.setdefault("email", email)
        return BatchDetails.model_validate(payload)

    def get_category_stats(self) -> CategoryStats:
        """Lifetime counts per category across all batches."""
        payload = self._get_json("/statistics/category") or {}
        categories = payload.get("categories") or {}
        return CategoryStats(
            valid=int(categories.get("valid") or 0),
            invalid=int(categories.get("invalid") or 0),
            risky=int(categories.get("risky") or 0),
            total=int(categories.get("total") or 0),
            timestamp=payload.get("timestamp"),
        )

    def export_batch(
        self,
        batch_id: str,
        category: str = "all",
        dest_dir: Optional[Path] = None,
    ) -> Path:
        """Download a batch export and write it under ``dest_dir``.

        Returns the path of the written file.
        """
        if category not in config.EXPORT_CATEGORIES:
            raise ValueError(
                f"category must be one of {', '.join(config.EXPORT_CATEGORIES)}, got {category!r}"
            )
        resp = self._request(
            "GET",
            f"/results/export/{quote(batch_id, safe='')}/{category}",
        )
        dest_dir = Path(dest_dir) if dest_dir is not None else config.EXPORT_DIR
        dest_dir.mkdir(parents=True, exist_ok=True)
        out_path = dest_dir / self._export_filename(resp, batch_id, category)
        out_path.write_bytes(resp.content)
        logger.info("Exported %s/%s to %s (%d bytes)", batch_id, category, out_path, len(resp.content))
        return out_path

    @staticmethod
    def _export_filename(resp, batch_id: str, category: str) -> str:
        headers = getattr(resp, "headers", None) or {}
        disposition = headers.get("content-disposition") or headers.get("Content-Disposition") or ""
        match = _FILENAME_RE.search(disposition)
        if match:
            name = os.path.basename(match.group(1).strip())
            if name:
                return name
        return f"{batch_id}_{category}.csv"
