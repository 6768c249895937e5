from __future__ import annotations

from typing import Optional

from turnkernel.logging import get_logger
from turnkernel.service.model_backend import ModelClient

logger = get_logger(__name__)

PUNCTUATE_INSTRUCTIONS = (
    "Add punctuation and capitalization to the user's text. "
    "Do not add, remove or reorder words. Return only the corrected text."
)


class TextNormalizer:
    """Best-effort punctuation pass; never blocks the turn pipeline."""

    def __init__(self, client: Optional[ModelClient], *, max_chars: int) -> None:
        self.client = client
        self.max_chars = max_chars

    async def punctuate(self, text: str) -> str:
        clipped = (text or "")[: self.max_chars]
        if self.client is None or not clipped.strip():
            return clipped
        reply = await self.client.complete(
            [
                {"role": "developer", "content": PUNCTUATE_INSTRUCTIONS},
                {"role": "user", "content": clipped},
            ]
        )
        output = (reply.text or "").strip()
        if not output:
            logger.info("punctuate_empty_output", chars=len(clipped))
            return clipped
        return output
