"""Oracle that asks an OpenAI chat model to judge ambiguous steps."""

from __future__ import annotations

import json
import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from .config import OPENAI_MODEL, OptimizerConfig, get_openai_api_key
from .oracle import (
    InvalidOracleResponse,
    OracleInvalidResponse,
    OracleOk,
    OracleRequest,
    OracleResult,
    OracleTimedOut,
    OracleTransportError,
    parse_oracle_response,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You review recorded browser workflows. You receive one navigation sequence: a run of steps that "
    "ends with the page URL changing from startUrl to endUrl.\n"
    "Decide for every step whether it is necessary (it changes application state: entering data, "
    "copying or pasting, confirming, creating, deleting, toggling a setting) or only exists to reach "
    "endUrl (opening menus, expanding sections, clicking links, scrolling).\n"
    "Each step carries the verdict of a rule table in ruleBasedClassification; steps marked necessary "
    "by the rules stay necessary. Focus on the steps marked uncertain.\n"
    "When in doubt, mark the step necessary and lower your confidence.\n"
    "Return ONLY a JSON object of the form "
    '{"stepClassifications": [{"stepIndex": <int>, "isNecessary": <bool>, "confidence": <0-1>, '
    '"reasoning": "<short reason>"}], "overallRecommendation": "optimize" | "keep" | "partial"}. '
    "Use the stepIndex values exactly as given."
)


class LLMOracle:
    """Delegate step judgement to an OpenAI model using the batched sequence request."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = OPENAI_MODEL, timeout_s: float = 10.0):
        self.client = client
        self.model = model
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, config: OptimizerConfig, model: str = OPENAI_MODEL) -> Optional["LLMOracle"]:
        api_key = get_openai_api_key()
        if not api_key:
            return None
        client = AsyncOpenAI(api_key=api_key, timeout=config.oracle_timeout_s, max_retries=1)
        return cls(client=client, model=model, timeout_s=config.oracle_timeout_s)

    async def analyze(self, request: OracleRequest) -> OracleResult:
        if not self.client:
            return OracleTransportError(message="OpenAI client is not configured")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(request.to_wire(), ensure_ascii=False, indent=2)},
        ]
        logger.debug("Oracle prompt: %s", messages[-1]["content"])
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.0,
                timeout=self.timeout_s,
            )
        except openai.APITimeoutError:
            return OracleTimedOut(timeout_s=self.timeout_s)
        except openai.APIStatusError as exc:
            return OracleTransportError(message=str(exc), status=exc.status_code)
        except openai.APIError as exc:
            return OracleTransportError(message=str(exc))

        raw = response.choices[0].message.content if response.choices else ""
        logger.debug("Oracle raw response: %s", raw)
        payload_str = _extract_json(raw or "")
        if not payload_str:
            return OracleInvalidResponse(message="oracle produced an empty response")
        try:
            return OracleOk(response=parse_oracle_response(json.loads(payload_str)))
        except json.JSONDecodeError as exc:
            return OracleInvalidResponse(message=f"invalid JSON: {exc}")
        except InvalidOracleResponse as exc:
            return OracleInvalidResponse(message=str(exc))


def _extract_json(content: str) -> str:
    trimmed = _remove_code_fences(content.strip())
    if trimmed.lower().startswith("json"):
        trimmed = trimmed[4:].lstrip(": \n\t")
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed
    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start != -1 and end > start:
        return trimmed[start : end + 1]
    return ""


def _remove_code_fences(text: str) -> str:
    if text.startswith("```"):
        fence = text.split("```")
        if len(fence) >= 3:
            return fence[1].strip()
        return text.lstrip("`")
    return text
