# src/autoloop/api/client.py
"""
Generation Oracle boundary.

The rest of the package only sees GenerationOracle.generate(); DeepSeekOracle
is the concrete implementation over an OpenAI-compatible chat endpoint.
Retries are owned by callers (see autoloop.core.retry), never by the Oracle.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional

import httpx

from autoloop.core.config import load_config, resolve_api_key

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    """Per-call generation options."""
    temperature: Optional[float] = None
    output_shape: Optional[str] = None  # "json" or None for free text
    max_tokens: Optional[int] = None


class GenerationOracle(ABC):
    """Text / structured-output generation capability."""

    @abstractmethod
    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        """Return generated text. Raises OracleError on failure."""

    async def close(self):
        """Release any held resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class DeepSeekOracle(GenerationOracle):
    def __init__(self, config_path: str = "config.yaml", config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_config(config_path)

        self.api_key = resolve_api_key(self.config)
        if not self.api_key or self.api_key == "your_api_key_here":
            raise ConfigurationError("AUTOLOOP_API_KEY not configured. Please set it in .env file or config.yaml")

        oracle_config = self.config['oracle']
        self.base_url = oracle_config['base_url']
        self.model = oracle_config['model']
        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        self.client = httpx.AsyncClient(timeout=oracle_config['timeout'])

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        """Send a single non-streaming chat completion and return its content."""
        options = options or GenerationOptions()
        app_config = self.config['generation']

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_tokens if options.max_tokens is not None else app_config['max_tokens'],
            "temperature": options.temperature if options.temperature is not None else app_config['temperature'],
            "stream": False
        }
        if options.output_shape == "json":
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers=self.headers,
                json=payload
            )
        except httpx.TimeoutException:
            raise OracleTimeoutError("Request timeout")
        except httpx.RequestError as e:
            raise OracleAPIError(f"Request failed: {str(e)}")

        if response.status_code == 401:
            raise AuthenticationError("Invalid API key")
        elif response.status_code == 429:
            raise RateLimitError("Rate limit exceeded")
        elif response.status_code >= 400:
            raise OracleAPIError(f"API error: {response.status_code}", response.status_code)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedOracleResponse(f"Unexpected completion payload: {e}")

        if not isinstance(content, str):
            raise MalformedOracleResponse("Completion content is not text")

        logger.debug(f"Oracle returned {len(content)} chars")
        return content

    async def test_connection(self) -> bool:
        """Test if API connection works"""
        try:
            await self.generate("Hello", GenerationOptions(max_tokens=10))
            return True
        except AuthenticationError:
            raise
        except OracleError as e:
            logger.error(f"Connection test failed: {e}")
            return False

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()


# Error classes
class OracleError(Exception):
    """Base exception for Generation Oracle failures."""
    pass

class AuthenticationError(OracleError):
    """Raised when API authentication fails."""
    pass

class RateLimitError(OracleError):
    """Raised when rate limit is exceeded."""
    pass

class OracleTimeoutError(OracleError):
    """Raised when the Oracle does not answer in time."""
    pass

class OracleAPIError(OracleError):
    """Raised for general API errors."""
    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)

class MalformedOracleResponse(OracleError):
    """Raised when Oracle output does not match the expected shape."""
    pass

class ConfigurationError(OracleError):
    """Raised for configuration errors."""
    pass
