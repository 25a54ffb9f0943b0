"""Reasoning oracle clients.

The oracle takes a rendered prompt and returns free-form text. ``HttpOracle``
speaks the OpenAI chat-completions protocol (OpenAI, Grok) and the Gemini
``generateContent`` protocol.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from agent_arena.core.config import OracleConfig

logger = structlog.get_logger(__name__)


class OracleError(RuntimeError):
    """Transport failure or a provider response without content."""


class ReasoningOracle(ABC):
    """External reasoning service used by the decision loop."""

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the oracle's raw text response to ``prompt``."""


class HttpOracle(ReasoningOracle):
    """
    HTTP client for chat-completion style providers.

    Args:
        config: Provider, endpoint, key, model and timeout settings
        client: Optional shared ``httpx.AsyncClient``; one is created per
            call otherwise
    """

    def __init__(self, config: Optional[OracleConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or OracleConfig()
        self._client = client
        self.logger = logger.bind(provider=self.config.provider, model=self.config.model_name)

    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """URL, headers and JSON body for the configured provider."""
        cfg = self.config
        headers = {"Content-Type": "application/json"}
        if cfg.provider == "gemini":
            separator = "&" if "?" in cfg.api_endpoint else "?"
            url = f"{cfg.api_endpoint}{separator}key={cfg.api_key}"
            body = {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": cfg.temperature},
            }
        else:
            url = cfg.api_endpoint
            headers["Authorization"] = f"Bearer {cfg.api_key}"
            body = {
                "model": cfg.model_name,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": cfg.temperature,
            }
        return url, headers, body

    def extract_text(self, payload: Any) -> str:
        """Pull the response text out of a provider payload."""
        try:
            if self.config.provider == "gemini":
                text = payload["candidates"][0]["content"]["parts"][0]["text"]
            else:
                text = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise OracleError(f"No content in {self.config.provider} response") from None
        if not isinstance(text, str) or not text.strip():
            raise OracleError(f"Empty content in {self.config.provider} response")
        return text

    async def complete(self, prompt: str) -> str:
        if not self.config.is_configured:
            raise OracleError(f"Oracle provider {self.config.provider} is not configured")

        url, headers, body = self.build_request(prompt)
        timeout = float(self.config.request_timeout_seconds)
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=body, timeout=timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, headers=headers, json=body, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            self.logger.error("oracle.http_error", status=e.response.status_code)
            raise OracleError(f"{self.config.provider} API returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            self.logger.error("oracle.transport_error", error=str(e))
            raise OracleError(f"{self.config.provider} API request failed: {e}") from e
        except ValueError as e:
            raise OracleError(f"{self.config.provider} API returned invalid JSON") from e

        text = self.extract_text(payload)
        self.logger.debug("oracle.completed", prompt_chars=len(prompt), response_chars=len(text))
        return text
