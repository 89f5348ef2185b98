"""OpenAI API LLM provider."""
import logging

from openai import AsyncOpenAI, OpenAIError

from app.services.llm_provider import LLMProvider, LLMProviderError

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions). One client per provider instance."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.1,
    ):
        self.model_name = model
        self.temperature = temperature
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate full response; json=True requests a JSON object."""
        extra = {}
        if kwargs.get("json"):
            extra["response_format"] = {"type": "json_object"}
        try:
            resp = await self._client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=kwargs.get("temperature", self.temperature),
                **extra,
            )
        except OpenAIError as e:
            raise LLMProviderError(f"OpenAI request failed: {e}") from e
        if resp.choices and resp.choices[0].message.content:
            return resp.choices[0].message.content
        return ""
