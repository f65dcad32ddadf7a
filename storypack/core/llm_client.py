"""LLM transport clients used by the judges.

Each client exposes ``generate_content(contents, system_instruction,
generation_config) -> str``. Clients are constructed once per process by
``create_llm_client`` and passed by reference to every judge.
"""

import asyncio
from typing import Any, Dict, Optional, Protocol

import httpx
from google import genai
from google.genai import types
from httpx import HTTPStatusError, TimeoutException

from storypack.core.config import LLMSettings
from storypack.core.exceptions import APIClientError, APITimeoutError, ConfigurationError
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)


class LLMClient(Protocol):
    """Text-generation interface the judges depend on."""

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        ...


class BaseLLMClient:
    """HTTP client for chat-completion style APIs.

    Handles retries with exponential backoff, timeout management and
    error logging.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: int = 60,
        max_retries: int = 3,
        retry_delay: int = 2
    ):
        """Initialize the HTTP client.

        Args:
            api_key: API key for authentication
            base_url: Endpoint URL
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts
            retry_delay: Base delay for exponential backoff
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def post_json(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``payload`` and return the decoded JSON body.

        Raises:
            APIClientError: On non-retryable errors or after exhausting retries
            APITimeoutError: If every attempt timed out
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(self.base_url, headers=headers, json=payload)
                    response.raise_for_status()
                    body = response.json()
                    if not isinstance(body, dict):
                        raise APIClientError("LLM response body is not a JSON object")
                    return body

                except HTTPStatusError as e:
                    status_code = e.response.status_code
                    LOGGER.warning(
                        f"LLM HTTP error (Attempt {attempt + 1}/{self.max_retries})",
                        extra={"status_code": status_code, "error_body": e.response.text[:500]}
                    )
                    # Client errors other than rate limiting are not retried
                    if 400 <= status_code < 500 and status_code != 429:
                        raise APIClientError(f"LLM client error {status_code}", original_error=e) from e
                    if attempt == self.max_retries - 1:
                        raise APIClientError(f"LLM HTTP error {status_code} after retries", original_error=e) from e

                except ValueError as e:
                    LOGGER.error("LLM response body is not valid JSON", extra={"error": str(e)})
                    raise APIClientError("LLM response body is not valid JSON", original_error=e) from e

                except TimeoutException as e:
                    LOGGER.warning(f"LLM timeout (Attempt {attempt + 1}/{self.max_retries})")
                    if attempt == self.max_retries - 1:
                        raise APITimeoutError(f"LLM timeout after {self.max_retries} attempts", original_error=e) from e

                except httpx.HTTPError as e:
                    LOGGER.warning(
                        f"LLM transport error (Attempt {attempt + 1}/{self.max_retries})",
                        extra={"error": str(e)}
                    )
                    if attempt == self.max_retries - 1:
                        raise APIClientError(f"LLM transport error: {e}", original_error=e) from e

                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        raise APIClientError(f"Failed to call {self.base_url} after {self.max_retries} attempts")


class OpenRouterClient:
    """Chat-completions client for OpenRouter."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: int = 60,
        max_retries: int = 3,
        retry_delay: int = 2,
    ):
        self.model = model
        self.http = BaseLLMClient(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        LOGGER.info(f"Initialized OpenRouter client with model {self.model}")

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Generate content using the OpenRouter model.

        Raises:
            APIClientError: If the call fails or the response has no choices
        """
        generation_config = generation_config or {}
        system_text = system_instruction or ""
        if generation_config.get("response_mime_type") == "application/json":
            system_text = f"{system_text}\n\nIMPORTANT: Respond with valid JSON only.".strip()

        messages = []
        if system_text:
            messages.append({"role": "system", "content": system_text})
        messages.append({"role": "user", "content": contents})

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": generation_config.get("temperature", 0.0),
        }
        if "max_output_tokens" in generation_config:
            payload["max_tokens"] = generation_config["max_output_tokens"]

        response = await self.http.post_json(payload)

        choices = response.get("choices") or []
        if not choices:
            LOGGER.error("Unexpected OpenRouter response format", extra={"keys": list(response)})
            raise APIClientError("Invalid response format from OpenRouter")

        content = choices[0].get("message", {}).get("content") or ""
        if not content:
            LOGGER.warning("Empty response from OpenRouter")
        return content


class GeminiClient:
    """Wrapper for the Google Gemini async API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        max_retries: int = 3,
    ):
        self.model = model
        self.max_retries = max_retries
        self.client = genai.Client(api_key=api_key)
        LOGGER.info(f"Initialized Gemini client with model {self.model}")

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Generate content using the Gemini model.

        Raises:
            APIClientError: If generation fails after retries
        """
        generation_config = generation_config or {}
        config = types.GenerateContentConfig(
            temperature=generation_config.get("temperature", 0.0),
        )
        if "max_output_tokens" in generation_config:
            config.max_output_tokens = generation_config["max_output_tokens"]
        if "response_mime_type" in generation_config:
            config.response_mime_type = generation_config["response_mime_type"]
        if system_instruction:
            config.system_instruction = system_instruction

        for attempt in range(self.max_retries):
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config
                )
                if not response.text:
                    LOGGER.warning("Empty response from Gemini")
                    return ""
                return response.text

            except Exception as e:
                LOGGER.warning(
                    f"Gemini API error (Attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt == self.max_retries - 1:
                    raise APIClientError(f"Gemini generation failed: {e}", original_error=e) from e
                await asyncio.sleep(2 ** attempt)

        raise APIClientError("Gemini generation failed")


def create_llm_client(llm_settings: LLMSettings) -> LLMClient:
    """Build the configured provider client.

    Raises:
        ConfigurationError: If the provider is unknown or its key is missing
    """
    provider = llm_settings.provider.lower()

    if provider == "openrouter":
        if not llm_settings.openrouter_api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is required when LLM_PROVIDER=openrouter")
        return OpenRouterClient(
            api_key=llm_settings.openrouter_api_key,
            model=llm_settings.openrouter_model,
            base_url=llm_settings.openrouter_api_url,
            timeout=llm_settings.http_timeout,
            max_retries=llm_settings.max_retries,
            retry_delay=llm_settings.retry_delay,
        )

    if provider == "gemini":
        if not llm_settings.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY is required when LLM_PROVIDER=gemini")
        return GeminiClient(
            api_key=llm_settings.gemini_api_key,
            model=llm_settings.gemini_model,
            max_retries=llm_settings.max_retries,
        )

    raise ConfigurationError(f"Unsupported LLM provider: {llm_settings.provider}")
