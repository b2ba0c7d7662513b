"""Creatomate client — submits video renders and checks their status.

Blocking (requests); async callers run it via asyncio.to_thread.
"""

import json
import logging
import random
import time

import requests

from airwave.config import CREATOMATE_API_KEY, CREATOMATE_API_URL, PROTOTYPE_MODE

logger = logging.getLogger(__name__)

# Creatomate render status → row-facing status
_STATUS_MAP = {
    "planned": "queued",
    "waiting": "queued",
    "transcribing": "rendering",
    "rendering": "rendering",
    "succeeded": "completed",
    "failed": "failed",
}


class RenderServiceError(RuntimeError):
    """The render API was unreachable or rejected the request."""


class CreatomateClient:
    def __init__(
        self,
        api_key: str = CREATOMATE_API_KEY,
        base_url: str = CREATOMATE_API_URL,
        prototype_mode: bool = PROTOTYPE_MODE,
        timeout: float = 30,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.prototype_mode = prototype_mode
        self.timeout = timeout

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request_with_retry(
        self,
        method: str,
        url: str,
        json_body: dict | None = None,
        max_retries: int = 4,
    ) -> requests.Response:
        """Make request with exponential backoff on 429 errors."""
        response = None
        for attempt in range(max_retries):
            response = requests.request(
                method, url, json=json_body, headers=self._get_headers(), timeout=self.timeout,
            )
            if response.status_code == 429:
                time.sleep(2 ** attempt)
                continue
            return response
        return response

    def submit_render(
        self,
        template_id: str,
        modifications: dict[str, str],
        output_format: str = "mp4",
        webhook_url: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Start a render. Returns the render job id.

        Raises RenderServiceError on any transport or API failure.
        """
        if self.prototype_mode:
            job_id = f"mock-{int(time.time() * 1000)}-{random.randint(0, 999)}"
            logger.info("PROTOTYPE_MODE: mock render %s for template %s", job_id, template_id)
            return job_id

        if not self.api_key:
            raise RenderServiceError("CREATOMATE_API_KEY is not set")

        payload = {
            "template_id": template_id,
            "modifications": modifications,
            "output_format": output_format,
        }
        if webhook_url:
            payload["webhook_url"] = webhook_url
        if metadata:
            payload["metadata"] = json.dumps(metadata)

        try:
            response = self._request_with_retry("POST", f"{self.base_url}/renders", payload)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            detail = e.response.text if e.response is not None else ""
            raise RenderServiceError(f"Failed to start render: {e} {detail}".strip()) from e
        except ValueError as e:
            raise RenderServiceError(f"Render API returned invalid JSON: {e}") from e

        # The API answers with one render per output; we request exactly one
        render = data[0] if isinstance(data, list) and data else data
        job_id = render.get("id") if isinstance(render, dict) else None
        if not job_id:
            raise RenderServiceError(f"Render API response has no id: {data!r}")
        return job_id

    def get_render(self, job_id: str) -> dict:
        """Check a render. Returns {id, status, url, thumbnail_url, error}.

        status is one of queued, rendering, completed, failed.
        """
        if self.prototype_mode:
            return {
                "id": job_id,
                "status": "completed",
                "url": f"https://example.com/mock-video-{job_id}.mp4",
                "thumbnail_url": f"https://example.com/mock-thumbnail-{job_id}.jpg",
                "error": None,
            }

        try:
            response = self._request_with_retry("GET", f"{self.base_url}/renders/{job_id}")
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise RenderServiceError(f"Failed to check render {job_id}: {e}") from e
        except ValueError as e:
            raise RenderServiceError(f"Render API returned invalid JSON: {e}") from e

        return parse_render(data)


def parse_render(data: dict) -> dict:
    """Map a Creatomate render object (API or webhook body) to our shape."""
    raw_status = str(data.get("status", "")).lower()
    return {
        "id": data.get("id"),
        "status": _STATUS_MAP.get(raw_status, raw_status or "unknown"),
        "url": data.get("url"),
        "thumbnail_url": data.get("snapshot_url") or data.get("thumbnail_url"),
        "error": data.get("error_message") or data.get("error"),
    }
