"""LLM provider abstraction used by classification, extraction and the scoring agents.

To add a new LLM backend:
1. Subclass LLMProvider and implement generate().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> LLMProvider.
3. Set LLM_PROVIDER=name.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any
import asyncio
import json
import logging
import urllib.error
import urllib.request

from app.services.utils import parse_json_response

logger = logging.getLogger(__name__)

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}


class LLMProviderError(Exception):
    """Transport or API failure talking to an LLM backend. Retryable."""


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model_name: str = "unknown"

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete LLM response."""
        pass


def _ollama_request(base_url: str, model: str, prompt: str, timeout: float, **kwargs) -> str:
    """Blocking Ollama HTTP request. Raises LLMProviderError on failure."""
    req_data = {"model": model, "prompt": prompt, "stream": False, **kwargs}
    data = json.dumps(req_data).encode("utf-8")
    req = urllib.request.Request(
        f"{base_url.rstrip('/')}/api/generate",
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body).get("response", "")
    except urllib.error.HTTPError as e:
        try:
            err_body = e.read().decode("utf-8")
        except (OSError, UnicodeDecodeError):
            err_body = ""
        raise LLMProviderError(f"Ollama API error: {e.code} - {err_body}") from e
    except (urllib.error.URLError, OSError, json.JSONDecodeError) as e:
        raise LLMProviderError(f"Ollama request failed: {e}") from e


class OllamaProvider(LLMProvider):
    """Ollama provider for local development. Uses urllib (no aiohttp)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        num_predict: int = 8192,
        timeout: float = 300.0,
    ):
        self.base_url = base_url
        self.model_name = model
        self.num_predict = num_predict
        self.timeout = timeout

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response from Ollama (JSON mode when json=True)."""
        opts = {"num_predict": self.num_predict, "temperature": kwargs.pop("temperature", 0.1)}
        if "options" in kwargs:
            opts = {**opts, **kwargs.pop("options")}
        extra: dict[str, Any] = {"options": opts}
        if kwargs.pop("json", False):
            extra["format"] = "json"
        return await asyncio.to_thread(
            _ollama_request, self.base_url, self.model_name, prompt, self.timeout, **extra
        )


def _vertex_generate_sync(model_name: str, prompt: str, gen_config: dict) -> str:
    """Blocking Vertex AI (Gemini) generate. Run via asyncio.to_thread to avoid blocking the event loop."""
    from vertexai.generative_models import GenerativeModel
    model = GenerativeModel(model_name)
    response = model.generate_content(prompt, generation_config=gen_config)
    return response.text or ""


class VertexAIProvider(LLMProvider):
    """Vertex AI (Gemini) provider for production. Sync SDK calls run off the event loop."""

    def __init__(self, project_id: str, location: str = "us-central1", model: str = "gemini-1.5-pro"):
        try:
            import vertexai
        except ImportError:
            raise ImportError("google-cloud-aiplatform is required for Vertex AI provider. Install with: pip install -e \".[vertex]\"")
        vertexai.init(project=project_id, location=location)
        self.model_name = model

    def _generation_config(self, **kwargs) -> dict:
        cfg: dict[str, Any] = {"temperature": kwargs.get("temperature", 0.1)}
        if kwargs.get("json"):
            cfg["response_mime_type"] = "application/json"
        return cfg

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response from Vertex AI (Gemini). Sync call runs in a thread."""
        gen_config = self._generation_config(**kwargs)
        return await asyncio.to_thread(_vertex_generate_sync, self.model_name, prompt, gen_config)


def _ollama_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OllamaProvider from config dict (for registry)."""
    ollama = config.get("ollama") or {}
    from app.config import OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_NUM_PREDICT
    base_url = ollama.get("base_url") or OLLAMA_BASE_URL
    model = config.get("model") or OLLAMA_MODEL
    options = config.get("options") or {}
    num_predict = options.get("num_predict")
    if num_predict is None:
        num_predict = OLLAMA_NUM_PREDICT
    return OllamaProvider(base_url=base_url, model=model, num_predict=int(num_predict))


def _vertex_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build VertexAIProvider from config dict (for registry)."""
    vertex = config.get("vertex") or {}
    from app.config import VERTEX_PROJECT_ID, VERTEX_LOCATION, VERTEX_MODEL
    project_id = vertex.get("project_id") or VERTEX_PROJECT_ID
    if not project_id:
        raise ValueError("Vertex AI requires project_id (vertex.project_id or VERTEX_PROJECT_ID)")
    location = vertex.get("location") or VERTEX_LOCATION
    model = config.get("model") or VERTEX_MODEL
    return VertexAIProvider(project_id=project_id, location=location, model=model)


def _openai_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OpenAIProvider from config dict (for registry)."""
    from app.services.llm_provider_openai import OpenAIProvider
    from app.config import OPENAI_API_KEY, OPENAI_MODEL, OPENAI_BASE_URL
    openai_config = config.get("openai") or {}
    api_key = openai_config.get("api_key") or OPENAI_API_KEY
    if not api_key:
        raise ValueError("OpenAI requires api_key (openai.api_key or OPENAI_API_KEY)")
    model = config.get("model") or OPENAI_MODEL
    base_url = openai_config.get("base_url") or OPENAI_BASE_URL
    return OpenAIProvider(api_key=api_key, model=model, base_url=base_url)


# Register built-in providers so config-driven modules can resolve by name
register_provider("ollama", _ollama_factory)
register_provider("vertex", _vertex_factory)
register_provider("openai", _openai_factory)


def get_llm_provider(provider: str | None = None) -> LLMProvider:
    """Get LLM provider based on environment configuration (config.py)."""
    from app.config import LLM_PROVIDER
    provider_name = (provider or LLM_PROVIDER or "").lower()
    factory = _PROVIDER_REGISTRY.get(provider_name)
    if factory is None:
        raise ValueError(f"Unknown LLM provider: {provider_name}. Registered: {list_providers()}")
    logger.info("Using LLM provider: %s", provider_name)
    return factory({"provider": provider_name})


async def generate_json(llm: LLMProvider, prompt: str, *, timeout: float | None = None, **kwargs) -> dict:
    """Generate and parse a JSON object response. Raises on timeout, provider or parse failure."""
    coro = llm.generate(prompt, json=True, **kwargs)
    raw = await (asyncio.wait_for(coro, timeout) if timeout else coro)
    return parse_json_response(raw)
