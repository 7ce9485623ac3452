"""
Gemini REST helpers shared by the restoration, prompt and Veo providers.
"""

import base64
import json
import logging
from typing import Optional

import httpx

from .. import config
from .errors import MalformedResponse, ProviderUnavailable

logger = logging.getLogger(__name__)


class GeminiClient:
    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        timeout: float = 0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or config.GEMINI_API_KEY
        self.api_base = (api_base or config.GEMINI_API_BASE).rstrip("/")
        self.timeout = timeout or config.PROVIDER_TIMEOUT_SECONDS
        self._http = http_client

    @property
    def auth_headers(self) -> dict:
        return {"x-goog-api-key": self.api_key}

    def _require_key(self):
        if not self.api_key:
            raise ProviderUnavailable("GEMINI_API_KEY not set")

    async def request(self, method: str, path: str, json_body: Optional[dict] = None) -> dict:
        """Call ``{api_base}/{path}`` and return the decoded JSON body."""
        self._require_key()
        url = f"{self.api_base}/{path.lstrip('/')}"
        client = self._http or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.request(method, url, headers=self.auth_headers, json=json_body)
            resp.raise_for_status()
            return resp.json()
        finally:
            if client is not self._http:
                await client.aclose()

    async def generate_content(self, model: str, parts: list, generation_config: Optional[dict] = None) -> dict:
        body: dict = {"contents": [{"parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config
        return await self.request("POST", f"models/{model}:generateContent", body)


def inline_image(data: bytes, mime_type: str) -> dict:
    return {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("utf-8")}}


def response_parts(result: dict) -> list:
    candidates = result.get("candidates") or []
    if not candidates:
        feedback = result.get("promptFeedback", {})
        raise MalformedResponse(f"Gemini returned no candidates ({feedback.get('blockReason', 'no reason')})")
    return (candidates[0].get("content") or {}).get("parts") or []


def first_inline_data(result: dict) -> tuple[bytes, str]:
    for part in response_parts(result):
        blob = part.get("inlineData") or part.get("inline_data")
        if blob and blob.get("data"):
            return base64.b64decode(blob["data"]), blob.get("mimeType") or blob.get("mime_type") or "image/png"
    raise MalformedResponse("Gemini response contained no image data")


def joined_text(result: dict) -> str:
    return "".join(part.get("text", "") for part in response_parts(result)).strip()


def parse_json_text(text: str):
    """Parse JSON from a model reply, tolerating ```json fences."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            block = text.split("```")[1]
            if block.startswith("json"):
                block = block[4:]
            try:
                return json.loads(block.strip())
            except json.JSONDecodeError:
                pass
        raise MalformedResponse(f"Gemini returned invalid JSON: {text[:200]}")
