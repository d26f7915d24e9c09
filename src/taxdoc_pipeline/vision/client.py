"""
Vision inference client (Ollama).

Sends document images (PDF pages are rendered first) with an extraction
prompt to an Ollama vision model and returns the transcribed text and the
structured fields it reported. Failures are raised as typed pipeline errors
so the resilience kernel can decide whether to retry.
"""

from __future__ import annotations

import base64
import io
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import pdfplumber

from ..resilience.errors import ProcessingTimeoutError, VisionServiceError

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif"})
PDF_MIME_TYPE = "application/pdf"

# PDF pages rendered and sent per request
MAX_PDF_PAGES = 3
PDF_RENDER_RESOLUTION = 150


@dataclass
class VisionResponse:
    """Output of one inference call."""

    text: str
    structured_fields: dict[str, Any] | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    model: str | None = None


class VisionService(Protocol):
    """What the pipeline needs from a vision inference backend."""

    def infer(
        self, content: bytes, mime_type: str, prompt: str, system_prompt: str | None = None
    ) -> VisionResponse: ...

    def ping(self) -> bool: ...


class ConcurrencyLimiter:
    """Semaphore-based concurrency limiter for inference requests.

    Prevents overwhelming the Ollama server with too many concurrent requests.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        with self._lock:
            return self._active_count


def parse_json_response(content: str) -> dict:
    """Parse JSON from a model response, tolerating code fences and chatter.

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered.
    """
    if not content:
        raise json.JSONDecodeError("Empty response", "", 0)

    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            raise
        parsed = json.loads(match.group())

    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("Expected a JSON object", content, 0)
    return parsed


def render_pdf_pages(content: bytes, max_pages: int = MAX_PDF_PAGES) -> list[bytes]:
    """Render the first pages of a PDF to PNG bytes."""
    images: list[bytes] = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        for page in pdf.pages[:max_pages]:
            buffer = io.BytesIO()
            page.to_image(resolution=PDF_RENDER_RESOLUTION).original.save(buffer, format="PNG")
            images.append(buffer.getvalue())
    return images


class OllamaVisionClient:
    """Ollama-backed vision inference.

    Implements:
    - Explicit connect/read/write/pool timeouts
    - Concurrency limiting for remote/shared servers
    - Optional auth header for proxied deployments
    - Typed errors: transient failures are recoverable, bad requests are not
    """

    def __init__(self, config: Any, transport: httpx.BaseTransport | None = None) -> None:
        """Initialize the client.

        Args:
            config: VisionConfig section.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.config = config

        headers = {}
        if config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header
        elif config.is_remote():
            logger.warning(
                "Vision endpoint %s is not local and no auth_header is configured",
                config.ollama_url,
            )

        self._client = httpx.Client(
            base_url=config.ollama_url.rstrip("/"),
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
            transport=transport,
        )
        self._limiter = ConcurrencyLimiter(max_concurrent=config.max_concurrent)

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def infer(
        self, content: bytes, mime_type: str, prompt: str, system_prompt: str | None = None
    ) -> VisionResponse:
        """Run one extraction request.

        Raises:
            ProcessingTimeoutError: The server did not answer in time.
            VisionServiceError: Any other failure (recoverable when transient).
        """
        user_message: dict[str, Any] = {"role": "user", "content": prompt}
        if mime_type in IMAGE_MIME_TYPES:
            user_message["images"] = [base64.b64encode(content).decode("ascii")]
        elif mime_type == PDF_MIME_TYPE:
            try:
                pages = render_pdf_pages(content)
            except Exception as e:
                raise VisionServiceError(f"Could not render PDF: {e}", recoverable=False) from e
            user_message["images"] = [base64.b64encode(p).decode("ascii") for p in pages]

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append(user_message)

        payload = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
            "format": "json",
        }

        if not self._limiter.acquire(timeout=self.config.timeout_seconds):
            logger.warning(
                "Vision request timed out waiting for concurrency slot (max=%d, active=%d)",
                self.config.max_concurrent,
                self._limiter.active_requests,
            )
            raise VisionServiceError("No free inference slot", recoverable=True)

        try:
            # Never log prompts or document content above DEBUG
            logger.debug("Calling vision model %s at %s", self.config.model, self.config.ollama_url)
            response = self._client.post("/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Vision request timed out after %ds", self.config.timeout_seconds)
            raise ProcessingTimeoutError("vision.infer", float(self.config.timeout_seconds)) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("Vision API error %s for model '%s'", status, self.config.model)
            transient = status == 429 or status >= 500
            raise VisionServiceError(
                f"Vision API returned {status}", recoverable=transient, status_code=status
            ) from e
        except httpx.RequestError as e:
            logger.error("Vision request failed: %s (URL: %s)", e, self.config.ollama_url)
            raise VisionServiceError(f"Vision request failed: {e}", recoverable=True) from e
        except json.JSONDecodeError as e:
            raise VisionServiceError("Vision API returned invalid JSON", recoverable=False) from e
        finally:
            self._limiter.release()

        content_text = data.get("message", {}).get("content", "")
        try:
            parsed = parse_json_response(content_text)
        except json.JSONDecodeError as e:
            logger.warning("Unparseable vision output (%d chars)", len(content_text))
            raise VisionServiceError("Vision output is not valid JSON", recoverable=False) from e

        fields = parsed.get("fields")
        usage = {
            key: data[key]
            for key in ("prompt_eval_count", "eval_count", "total_duration")
            if key in data
        }
        logger.debug("Vision model returned %d fields", len(fields or {}))
        return VisionResponse(
            text=str(parsed.get("text") or ""),
            structured_fields=fields if isinstance(fields, dict) else None,
            usage=usage,
            model=data.get("model", self.config.model),
        )

    def ping(self) -> bool:
        """Check that the server answers and the model is installed."""
        response = self._client.get("/api/tags", timeout=5.0)
        response.raise_for_status()
        models = [m.get("name", "") for m in response.json().get("models", [])]
        if self.config.model not in models:
            raise VisionServiceError(
                f"Model {self.config.model} not available", recoverable=False
            )
        return True

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> OllamaVisionClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()
