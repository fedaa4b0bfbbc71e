# src/autoloop/core/structured.py
"""
Oracle calls with retries and schema validation.
"""
import json
import logging
import re
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from autoloop.api.client import GenerationOracle, GenerationOptions, MalformedOracleResponse
from autoloop.core.retry import RetryPolicy, with_retries

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text.strip()


def parse_json_payload(text: str, schema: Type[M]) -> M:
    """Parse Oracle text into schema. Raises MalformedOracleResponse."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose
        start, end = cleaned.find('{'), cleaned.rfind('}')
        if start == -1 or end <= start:
            raise MalformedOracleResponse(f"Response is not JSON: {cleaned[:80]!r}")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedOracleResponse(f"Response is not JSON: {e}")

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise MalformedOracleResponse(
            f"Response does not match {schema.__name__}: {e.error_count()} error(s)"
        )


async def request_structured(oracle: GenerationOracle,
                             prompt: str,
                             schema: Type[M],
                             policy: RetryPolicy,
                             options: Optional[GenerationOptions] = None,
                             description: str = "structured oracle call") -> M:
    """Ask the Oracle for JSON and validate it against schema.

    Generation and validation are retried together, so a malformed answer
    gets a fresh attempt like any transport failure.
    """
    options = options or GenerationOptions()
    if options.output_shape is None:
        options = GenerationOptions(temperature=options.temperature,
                                    output_shape="json",
                                    max_tokens=options.max_tokens)

    async def attempt() -> M:
        text = await oracle.generate(prompt, options)
        return parse_json_payload(text, schema)

    return await with_retries(attempt, policy, description)


async def request_text(oracle: GenerationOracle,
                       prompt: str,
                       policy: RetryPolicy,
                       options: Optional[GenerationOptions] = None,
                       description: str = "oracle call") -> str:
    """Ask the Oracle for free text. Empty answers count as malformed."""

    async def attempt() -> str:
        text = await oracle.generate(prompt, options)
        if not text or not text.strip():
            raise MalformedOracleResponse("Empty response")
        return text.strip()

    return await with_retries(attempt, policy, description)
