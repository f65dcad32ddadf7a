"""Shared plumbing for LLM judges.

A judge never raises on a model failure: every call resolves to a
``JudgeOutcome`` with ``success=False`` and an ``error_kind`` of
``timeout``, ``api_error`` or ``unparseable``. Output that decodes as JSON
but has the wrong shape counts as ``unparseable``.
"""

import asyncio
import hashlib
from typing import Any, Callable, Dict, MutableMapping, Optional

from pydantic import ValidationError as PydanticValidationError

from storypack.core.exceptions import APIClientError
from storypack.core.llm_client import LLMClient
from storypack.models.outcomes import JudgeErrorKind, JudgeOutcome
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

_MISSING = object()

JSON_GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.0,
    "response_mime_type": "application/json",
}


def clamp_unit(value) -> Optional[float]:
    """Coerce ``value`` to a float in [0, 1]; None when it is not numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, number))


def cache_key(judge_name: str, system_prompt: str, message: str) -> str:
    digest = hashlib.sha256()
    for part in (judge_name, system_prompt, message):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class BaseJudge:
    """Wraps one LLM role with a timeout, error mapping and optional memoisation.

    Args:
        client: Shared LLM client handle
        timeout_seconds: Upper bound for a single call
        cache: Optional mapping of prompt hash to parsed result. Only
            successful results are stored.
    """

    name = "judge"
    max_output_tokens = 2048

    def __init__(
        self,
        client: LLMClient,
        timeout_seconds: float = 90.0,
        cache: Optional[MutableMapping[str, Any]] = None,
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.cache = cache

    async def _call(
        self,
        system_prompt: str,
        message: str,
        parse: Callable[[str], Optional[Any]],
    ) -> JudgeOutcome:
        key = cache_key(self.name, system_prompt, message)
        cached = self.cache.get(key, _MISSING) if self.cache is not None else _MISSING
        if cached is not _MISSING:
            LOGGER.debug(f"{self.name} cache hit")
            return JudgeOutcome.ok(cached)

        config = dict(JSON_GENERATION_CONFIG, max_output_tokens=self.max_output_tokens)

        try:
            raw = await asyncio.wait_for(
                self.client.generate_content(
                    contents=message,
                    system_instruction=system_prompt,
                    generation_config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                f"{self.name} timed out",
                extra={"timeout_seconds": self.timeout_seconds},
            )
            return JudgeOutcome.failed(JudgeErrorKind.TIMEOUT, f"{self.name} timed out")
        except APIClientError as e:
            LOGGER.warning(f"{self.name} API error: {e}")
            return JudgeOutcome.failed(JudgeErrorKind.API_ERROR, str(e))
        except Exception as e:
            LOGGER.error(f"{self.name} client failed: {e}", exc_info=True)
            return JudgeOutcome.failed(JudgeErrorKind.API_ERROR, f"{type(e).__name__}: {e}")

        try:
            data = parse(raw or "")
        except (TypeError, ValueError, OverflowError, PydanticValidationError) as e:
            LOGGER.warning(
                f"{self.name} output has an unexpected shape: {e}",
                extra={"response_preview": (raw or "")[:200]},
            )
            return JudgeOutcome.failed(JudgeErrorKind.UNPARSEABLE, f"{self.name} output has an unexpected shape")

        if data is None:
            LOGGER.warning(
                f"{self.name} returned unparseable output",
                extra={"response_preview": (raw or "")[:200]},
            )
            return JudgeOutcome.failed(JudgeErrorKind.UNPARSEABLE, f"{self.name} output could not be parsed")

        if self.cache is not None:
            self.cache[key] = data
        return JudgeOutcome.ok(data)
