"""
Stage 3: Animation — Veo 3.1 Fast.

Two interchangeable backends, chosen by VIDEO_PROVIDER:
  - gemini: Gemini API long-running operation (predictLongRunning)
  - kie:    Kie.ai Veo endpoint (generate + record-info)

Both only start the job and report on it; the fixed-interval polling loop
lives in the job client.
"""

import base64
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from .. import config
from .errors import MalformedResponse, ProviderUnavailable
from .gemini import GeminiClient
from .jobs import Done, Failed, FailureReason, JobResult, Pending, VideoProvider

logger = logging.getLogger(__name__)

VIDEO_PROMPT_PREFIX = "Cinematic shot, "
VIDEO_PROMPT_SUFFIX = ", high quality, smooth motion, professional cinematography, 4K"


def build_video_prompt(english_prompts: list[str]) -> str:
    return f"{VIDEO_PROMPT_PREFIX}{', '.join(english_prompts)}{VIDEO_PROMPT_SUFFIX}"


LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}


def is_public_url(url: Optional[str]) -> bool:
    """True when a third party could fetch ``url`` (absolute http(s), not a loopback host)."""
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    return parsed.hostname not in LOCAL_HOSTS and not parsed.hostname.endswith(".local")


# ═════════════════════════════════════════════════════════════════════════════
# Gemini API (Veo long-running operation)
# ═════════════════════════════════════════════════════════════════════════════

class VeoVideoProvider(VideoProvider):
    def __init__(self, client: GeminiClient, model: str = "", aspect_ratio: str = "16:9"):
        self.client = client
        self.model = model or config.VIDEO_MODEL
        self.aspect_ratio = aspect_ratio

    async def start(self, prompt: str, image: bytes, mime_type: str, image_url: Optional[str]) -> str:
        body = {
            "instances": [{
                "prompt": prompt,
                "image": {
                    "bytesBase64Encoded": base64.b64encode(image).decode("utf-8"),
                    "mimeType": mime_type,
                },
            }],
            "parameters": {"aspectRatio": self.aspect_ratio},
        }
        data = await self.client.request("POST", f"models/{self.model}:predictLongRunning", body)
        name = data.get("name")
        if not name:
            raise MalformedResponse(f"Veo submit returned no operation name: {str(data)[:200]}")
        return name

    async def check(self, operation_id: str) -> JobResult:
        data = await self.client.request("GET", operation_id)
        if not data.get("done"):
            return Pending()

        if data.get("error"):
            message = data["error"].get("message", "Unknown Veo error")
            return Failed(FailureReason.PROVIDER_UNAVAILABLE, f"Veo generation failed: {message}")

        response = data.get("response") or {}
        samples = (response.get("generateVideoResponse") or {}).get("generatedSamples") or []
        uri = ((samples[0] if samples else {}).get("video") or {}).get("uri")
        if not uri:
            filtered = (response.get("generateVideoResponse") or {}).get("raiMediaFilteredReasons")
            return Failed(
                FailureReason.MALFORMED_RESPONSE,
                f"Veo finished without a video ({filtered or 'no samples'})",
            )
        return Done(uri=uri, mime_type="video/mp4", headers=self.client.auth_headers)


# ═════════════════════════════════════════════════════════════════════════════
# Kie.ai
# ═════════════════════════════════════════════════════════════════════════════

KIE_SUCCESS = {"SUCCESS", "success", "completed"}
KIE_FAILED = {"GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "FAILED", "failed", "fail", "error"}


class KieVideoProvider(VideoProvider):
    """Kie.ai needs the source image as a public URL."""

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        timeout: float = 0,
        http_client: Optional[httpx.AsyncClient] = None,
        aspect_ratio: str = "16:9",
    ):
        self.api_key = api_key or config.KIE_API_KEY
        self.api_base = (api_base or config.KIE_API_BASE).rstrip("/")
        self.timeout = timeout or config.PROVIDER_TIMEOUT_SECONDS
        self.aspect_ratio = aspect_ratio
        self._http = http_client

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.api_key:
            raise ProviderUnavailable("KIE_API_KEY not set")
        client = self._http or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.request(
                method,
                f"{self.api_base}/{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                **kwargs,
            )
            resp.raise_for_status()
            return resp.json()
        finally:
            if client is not self._http:
                await client.aclose()

    async def start(self, prompt: str, image: bytes, mime_type: str, image_url: Optional[str]) -> str:
        if not is_public_url(image_url):
            raise ProviderUnavailable(f"Kie.ai needs a publicly reachable image URL (got {image_url!r})")

        payload = {
            "prompt": prompt,
            "model": "veo3_fast",
            "generationType": "FIRST_AND_LAST_FRAMES_2_VIDEO",
            "aspectRatio": self.aspect_ratio,
            "imageUrls": [image_url],
        }
        data = await self._request("POST", "veo/generate", json=payload)

        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        task_id = inner.get("taskId") or inner.get("task_id") or data.get("taskId")
        if not task_id:
            raise MalformedResponse(f"Kie.ai submit returned no taskId: {str(data)[:200]}")
        return task_id

    async def check(self, operation_id: str) -> JobResult:
        data = await self._request("GET", "veo/record-info", params={"taskId": operation_id})
        record = data.get("data") if isinstance(data.get("data"), dict) else {}

        status = record.get("status", "")
        flag = record.get("successFlag")

        if status in KIE_SUCCESS or flag == 1:
            response = record.get("response") or {}
            urls = response.get("resultUrls") or record.get("resultUrls") or []
            video_url = urls[0] if urls else record.get("videoUrl") or record.get("resultUrl")
            if not video_url:
                return Failed(FailureReason.MALFORMED_RESPONSE, "Kie.ai finished without a video URL")
            return Done(uri=video_url, mime_type="video/mp4")

        if status in KIE_FAILED or flag in (2, 3):
            message = record.get("errorMessage") or record.get("failReason") or data.get("msg") or "Unknown Kie.ai error"
            return Failed(FailureReason.PROVIDER_UNAVAILABLE, f"Kie.ai generation failed: {message}")

        return Pending(status or "processing")
