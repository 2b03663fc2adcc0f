import logging
import os
from typing import Optional

from openai import AsyncOpenAI

from .config import settings
from .money import to_major


logger = logging.getLogger(__name__)


def entry_summary(direction: str, amount: int, currency: str,
                  category_name: Optional[str] = None,
                  note: Optional[str] = None,
                  counterparty: Optional[str] = None) -> str:
    """Free-text description of an entry used as embedding input."""
    parts = [direction, f"{to_major(amount)} {currency}"]
    if category_name:
        parts.append(f"category: {category_name}")
    description = " ".join(p for p in (counterparty, note) if p)
    if description:
        parts.append(description)
    return "; ".join(parts)


class EntryEmbedder:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.openai_api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or settings.embedding_model
        self.client = None

        if settings.embeddings_enabled and self.api_key:
            self.client = AsyncOpenAI(api_key=self.api_key)

    @property
    def is_available(self) -> bool:
        return self.client is not None

    async def embed(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(model=self.model, input=text)
        logger.debug("Embedded %d chars with %s", len(text), self.model)
        return list(response.data[0].embedding)
