"""
Language model providers for Market Analyst.

WHAT THIS FILE DOES:
-------------------
The planner, analyzer and synthesizer all work the same way: render a
prompt, ask a model for a JSON document, validate it with defaults. This
file covers the "ask a model" part with one small interface:

    - complete() -> returns the raw response text plus token usage
    - list_models() -> what the backend can serve (used as a health probe)

Validation does NOT live here. A provider returns whatever the
model said; contracts.py decides what is usable and fills in defaults.

HOW EACH PROVIDER ASKS FOR JSON:
-------------------------------
1. Ollama (default, local): /api/chat with format="json"
2. OpenAI: response_format={"type": "json_object"}
3. Anthropic (Claude): no JSON switch; the prompt asks for JSON only and
   extract_json_from_text() strips any surrounding prose
"""

import os
import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from config import LLMConfig


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def extract_json_from_text(text: str) -> str:
    """
    Extract JSON from text that might have markdown code blocks or extra content.

    Models sometimes return:
        Here's the JSON:
        ```json
        {"recommendation": "..."}
        ```

    This extracts just the JSON part.
    """
    code_block_match = re.search(r'```(?:json)?\s*([\s\S]*?)```', text)
    if code_block_match:
        return code_block_match.group(1).strip()

    json_match = re.search(r'(\{[\s\S]*\}|\[[\s\S]*\])', text)
    if json_match:
        return json_match.group(1)

    # Return original text and let JSON parser fail with good error
    return text


class ModelProvider(ABC):
    """
    Base class for model providers.

    All providers must implement:
    - complete(): Raw text completion, optionally in JSON mode
    - list_models(): Models available from the backend
    """

    model: str

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> dict:
        """
        Generate a completion.

        Returns:
            dict with keys:
            - content: str (the response text)
            - input_tokens: int
            - output_tokens: int
            - model: str
        """
        pass

    @abstractmethod
    async def list_models(self) -> list[str]:
        """List model IDs available from the provider's API."""
        pass


# =============================================================================
# OLLAMA PROVIDER (local models)
# =============================================================================

class OllamaProvider(ModelProvider):
    """
    Ollama local model provider (Llama, Mistral, etc.).

    Ollama's chat endpoint accepts format="json", which constrains sampling
    to valid JSON. The shape still has to be validated by the caller.
    """

    def __init__(self, model: str = "llama3.2", base_url: str = "http://localhost:11434", timeout: float = 120.0):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def complete(
        self,
        messages: list[dict],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> dict:
        all_messages = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        payload = {
            "model": self.model,
            "messages": all_messages,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
            "stream": False,
        }
        if json_mode:
            payload["format"] = "json"

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/api/chat",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()

        return {
            "content": data.get("message", {}).get("content", ""),
            "input_tokens": data.get("prompt_eval_count", 0),
            "output_tokens": data.get("eval_count", 0),
            "model": self.model,
        }

    async def list_models(self) -> list[str]:
        """List available models from Ollama."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{self.base_url}/api/tags", timeout=10.0)
            response.raise_for_status()
            data = response.json()
            return [m["name"] for m in data.get("models", [])]


# =============================================================================
# ANTHROPIC PROVIDER (Claude)
# =============================================================================

class AnthropicProvider(ModelProvider):
    """Anthropic Claude provider over the Messages API."""

    def __init__(self, model: str = "claude-sonnet-4-20250514", api_key: Optional[str] = None, timeout: float = 120.0):
        self.model = model
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not set")
        self.base_url = "https://api.anthropic.com/v1"
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    async def complete(
        self,
        messages: list[dict],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> dict:
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/messages",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()

        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        if json_mode:
            text = extract_json_from_text(text)

        return {
            "content": text,
            "input_tokens": data["usage"]["input_tokens"],
            "output_tokens": data["usage"]["output_tokens"],
            "model": self.model,
        }

    async def list_models(self) -> list[str]:
        """List available models from Anthropic API."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}/models",
                headers=self._headers(),
                timeout=30.0,
            )
            response.raise_for_status()
            data = response.json()
            return [m["id"] for m in data["data"]]


# =============================================================================
# OPENAI PROVIDER
# =============================================================================

class OpenAIProvider(ModelProvider):
    """OpenAI chat completions provider."""

    def __init__(self, model: str = "gpt-4o", api_key: Optional[str] = None, timeout: float = 120.0):
        self.model = model
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY not set")
        self.base_url = "https://api.openai.com/v1"
        self.timeout = timeout

    def _get_token_param(self, max_tokens: int) -> dict:
        """
        Get the correct token limit parameter for the model.
        GPT-5.x models use 'max_completion_tokens', older models use 'max_tokens'.
        """
        if self.model.startswith("gpt-5"):
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens}

    async def complete(
        self,
        messages: list[dict],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        json_mode: bool = False,
    ) -> dict:
        all_messages = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        payload = {
            "model": self.model,
            "messages": all_messages,
            "temperature": temperature,
            **self._get_token_param(max_tokens),
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()

        return {
            "content": data["choices"][0]["message"]["content"] or "",
            "input_tokens": data["usage"]["prompt_tokens"],
            "output_tokens": data["usage"]["completion_tokens"],
            "model": self.model,
        }

    async def list_models(self) -> list[str]:
        """List available models from OpenAI API."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=30.0,
            )
            response.raise_for_status()
            data = response.json()
            return [m["id"] for m in data["data"]]


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def get_provider(llm: LLMConfig) -> ModelProvider:
    """
    Get a provider instance from the llm section of the config.

    Raises:
        ValueError: Unknown provider type or missing API key
    """
    if llm.provider not in ("anthropic", "openai", "ollama"):
        raise ValueError(
            f"Invalid LLM provider type: '{llm.provider}'. "
            f"Must be one of: anthropic, openai, ollama"
        )

    if llm.provider == "ollama":
        return OllamaProvider(
            model=llm.model,
            base_url=llm.base_url or "http://localhost:11434",
            timeout=llm.timeout,
        )

    default_env = "ANTHROPIC_API_KEY" if llm.provider == "anthropic" else "OPENAI_API_KEY"
    api_key_env = llm.api_key_env or default_env
    api_key = os.environ.get(api_key_env)
    if not api_key:
        raise ValueError(f"LLM provider '{llm.provider}' requires {api_key_env} but it's not set")

    if llm.provider == "anthropic":
        return AnthropicProvider(model=llm.model, api_key=api_key, timeout=llm.timeout)
    return OpenAIProvider(model=llm.model, api_key=api_key, timeout=llm.timeout)


async def check_model_available(provider: ModelProvider) -> tuple[bool, str]:
    """
    Check that the backend answers and serves the configured model.

    Returns:
        Tuple of (is_available, detail message)
    """
    try:
        models = await provider.list_models()
    except httpx.HTTPError as e:
        return False, f"unreachable: {e}"

    base_names = {name.split(":")[0] for name in models}
    if provider.model in models or provider.model.split(":")[0] in base_names:
        return True, f"{provider.model} available"
    return False, f"{provider.model} not found ({len(models)} models available)"
