"""
Stage 2: Animation prompts — Gemini Flash (vision).

Asks for four animation ideas for the restored photo, each phrased in
English and Russian. Fewer than four usable entries is a malformed
response; extra entries are dropped.
"""

import logging

from .. import config
from .errors import MalformedResponse
from .gemini import GeminiClient, inline_image, joined_text, parse_json_text
from .jobs import Done, PromptProvider
from .models import PROMPT_COUNT, BilingualPrompt

logger = logging.getLogger(__name__)

PROMPTS_INSTRUCTION = f"""You are a creative AI assistant. Analyze this restored vintage photo and
generate {PROMPT_COUNT} different, creative animation prompts that would bring this photo to life.
Each prompt should describe a cinematic, smooth motion that fits the scene.

Write every prompt in English and in Russian. Respond with ONLY a JSON array of
{PROMPT_COUNT} objects, no markdown, no explanation:
[{{"en": "...", "ru": "..."}}, ...]
"""


def parse_bilingual_prompts(payload) -> list[BilingualPrompt]:
    if isinstance(payload, dict):
        payload = payload.get("prompts")
    if not isinstance(payload, list):
        raise MalformedResponse("Prompt reply is not a JSON array")

    prompts: list[BilingualPrompt] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        en = str(item.get("en") or "").strip()
        ru = str(item.get("ru") or "").strip()
        if en and ru:
            prompts.append(BilingualPrompt(en=en, ru=ru))

    if len(prompts) < PROMPT_COUNT:
        raise MalformedResponse(f"Expected {PROMPT_COUNT} bilingual prompts, got {len(prompts)}")
    return prompts[:PROMPT_COUNT]


class GeminiPromptProvider(PromptProvider):
    def __init__(self, client: GeminiClient, model: str = ""):
        self.client = client
        self.model = model or config.PROMPT_MODEL

    async def generate(self, image: bytes, mime_type: str) -> Done:
        result = await self.client.generate_content(
            self.model,
            [inline_image(image, mime_type), {"text": PROMPTS_INSTRUCTION}],
            {"temperature": 0.9, "responseMimeType": "application/json"},
        )
        prompts = parse_bilingual_prompts(parse_json_text(joined_text(result)))
        logger.info(f"Generated {len(prompts)} bilingual prompts")
        return Done(value=prompts, mime_type="application/json")
