"""
Stage 1: Photo restoration — Gemini image model.

Sends the cropped upload inline with a restoration instruction and expects
an image part back. A reply without image bytes is a malformed response,
never "use the original instead".
"""

import logging

from .. import config
from .gemini import GeminiClient, first_inline_data, inline_image
from .jobs import Done, RestorationProvider

logger = logging.getLogger(__name__)

RESTORE_PROMPT = (
    "Act as a high-end photo restoration AI. Restore this image to look like a "
    "modern iPhone 15 Pro photo. Enhance colors, remove scratches, fix fading, "
    "improve sharpness, and make it look professionally restored while "
    "maintaining the original character and authenticity."
)


class GeminiRestorationProvider(RestorationProvider):
    def __init__(self, client: GeminiClient, model: str = ""):
        self.client = client
        self.model = model or config.RESTORE_MODEL

    async def restore(self, image: bytes, mime_type: str) -> Done:
        result = await self.client.generate_content(
            self.model,
            [inline_image(image, mime_type), {"text": RESTORE_PROMPT}],
            {"responseModalities": ["TEXT", "IMAGE"], "temperature": 0.4},
        )
        data, out_mime = first_inline_data(result)
        logger.info(f"Restoration returned {len(data)} bytes ({out_mime})")
        return Done(data=data, mime_type=out_mime)
