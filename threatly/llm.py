"""LLM provider abstraction for Threatly."""

import json
import logging
import os
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4.1-nano"
DEFAULT_OLLAMA_MODEL = "qwen2.5:7b"
DEFAULT_OLLAMA_URL = "http://localhost:11434"


class ProviderError(Exception):
    """The LLM call failed: transport, auth, rate limit or an empty answer."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        """Return the model's reply text. Raises ProviderError on failure."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the provider is properly configured."""


class OllamaProvider(LLMProvider):
    """Ollama local LLM provider."""

    def __init__(
        self,
        model: str = DEFAULT_OLLAMA_MODEL,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = 300.0,
    ):
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._available: bool | None = None

    def is_configured(self) -> bool:
        if self._available is not None:
            return self._available

        try:
            with httpx.Client(timeout=5.0) as client:
                response = client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                models = response.json().get("models", [])
                model_names = [m.get("name", "") for m in models]
                model_base = self.model.split(":")[0]
                self._available = any(model_base in name for name in model_names)
                if not self._available:
                    logger.warning(
                        "Ollama model '%s' not found. Available: %s",
                        self.model,
                        model_names,
                    )
        except httpx.ConnectError:
            logger.warning("Ollama not running at %s", self.base_url)
            self._available = False
        except httpx.HTTPError as e:
            logger.warning("Error checking Ollama: %s", e)
            self._available = False

        return self._available

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": user_prompt},
                        ],
                        "stream": False,
                        "options": {
                            "num_predict": max_tokens,
                            "temperature": temperature,
                        },
                    },
                )
                response.raise_for_status()
                content = response.json()["message"]["content"]
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama API error: {e}") from e
        except (KeyError, ValueError) as e:
            raise ProviderError(f"Unexpected Ollama response: {e}") from e

        if not content:
            raise ProviderError("Ollama returned an empty response")
        return content


class OpenAIProvider(LLMProvider):
    """OpenAI API provider.

    The SDK retries 429 and 5xx responses itself with exponential backoff,
    so ``max_retries`` is the rate-limit budget for a single batch.
    """

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        api_key_env: str = "OPENAI_API_KEY",
        max_retries: int = 2,
        timeout: float = 120.0,
    ):
        self.model = model
        self.api_key = os.environ.get(api_key_env)
        self._client = None

        if self.api_key:
            from openai import OpenAI

            self._client = OpenAI(
                api_key=self.api_key, max_retries=max_retries, timeout=timeout
            )
        else:
            logger.debug("OpenAI API key not found in %s", api_key_env)

    def is_configured(self) -> bool:
        return self._client is not None

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        if not self._client:
            raise ProviderError("OpenAI client is not configured")

        import openai

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI API error: {e}") from e

        if not response.choices:
            raise ProviderError("OpenAI returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise ProviderError("OpenAI returned an empty response")

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug("OpenAI tokens used: %s", usage.total_tokens)
        return content


def create_provider(config: dict) -> LLMProvider | None:
    """Create LLM provider based on configuration."""
    llm_config = config.get("classification") or {}
    provider_name = llm_config.get("provider", "openai").lower()
    max_retries = int(llm_config.get("max_retries", 2))

    if provider_name == "ollama":
        model = llm_config.get("ollama_model", DEFAULT_OLLAMA_MODEL)
        base_url = llm_config.get("ollama_url", DEFAULT_OLLAMA_URL)
        provider = OllamaProvider(model=model, base_url=base_url)
        if provider.is_configured():
            logger.info("Using Ollama with model: %s", model)
            return provider
        logger.info("Ollama not available, trying OpenAI fallback...")
        provider_name = "openai"

    if provider_name == "openai":
        model = os.environ.get("OPENAI_MODEL") or llm_config.get(
            "model", DEFAULT_OPENAI_MODEL
        )
        api_key_env = llm_config.get("api_key_env", "OPENAI_API_KEY")
        provider = OpenAIProvider(
            model=model, api_key_env=api_key_env, max_retries=max_retries
        )
        if provider.is_configured():
            logger.info("Using OpenAI with model: %s", model)
            return provider

    logger.error("No LLM provider available. Set OPENAI_API_KEY or start Ollama.")
    return None


def parse_json_response(text: str) -> dict | list | None:
    """Parse a JSON response from an LLM, handling markdown code blocks."""
    text = text.strip()

    # Strip markdown code fences
    if text.startswith("```"):
        lines = text.split("\n")
        end_idx = len(lines) - 1
        for i in range(len(lines) - 1, 0, -1):
            if lines[i].strip() == "```":
                end_idx = i
                break
        text = "\n".join(lines[1:end_idx])

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse LLM response as JSON: %s", e)
        logger.debug("Response was: %s", text[:200])
        return None
