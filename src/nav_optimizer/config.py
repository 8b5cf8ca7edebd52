"""Configuration for the navigation optimizer."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from a .env file when present.
load_dotenv()

ORACLE_BASE_URL = os.getenv("NAV_ORACLE_URL") or None

ORACLE_FUNCTION_NAME = os.getenv("NAV_ORACLE_FUNCTION", "analyze_navigation_steps")

ORACLE_TIMEOUT_S = float(os.getenv("NAV_ORACLE_TIMEOUT_S", "10"))

CONFIDENCE_THRESHOLD = float(os.getenv("NAV_CONFIDENCE_THRESHOLD", "0.7"))

ORACLE_CACHE_TTL_S = float(os.getenv("NAV_ORACLE_CACHE_TTL_S", "3600"))

OPENAI_MODEL = os.getenv("NAV_OPENAI_MODEL", "gpt-4o-mini")


def get_oracle_api_key() -> str | None:
    """Return the bearer key for the oracle endpoint or None when it is not configured."""
    return os.getenv("NAV_ORACLE_API_KEY") or None


def get_openai_api_key() -> str | None:
    """Return the OpenAI API key or None when it is not configured."""
    return os.getenv("OPENAI_API_KEY") or None


class OptimizerConfig(BaseModel):
    """Settings handed to the optimizer at call time."""

    use_oracle: bool = True
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    oracle_timeout_s: float = Field(default=10.0, gt=0.0)
    oracle_base_url: Optional[str] = None
    oracle_function_name: str = "analyze_navigation_steps"
    oracle_api_key: Optional[str] = None
    cache_ttl_s: float = Field(default=3600.0, ge=0.0)

    @classmethod
    def from_env(cls, **overrides) -> "OptimizerConfig":
        values = {
            "confidence_threshold": CONFIDENCE_THRESHOLD,
            "oracle_timeout_s": ORACLE_TIMEOUT_S,
            "oracle_base_url": ORACLE_BASE_URL,
            "oracle_function_name": ORACLE_FUNCTION_NAME,
            "oracle_api_key": get_oracle_api_key(),
            "cache_ttl_s": ORACLE_CACHE_TTL_S,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def oracle_endpoint(self) -> Optional[str]:
        if not self.oracle_base_url:
            return None
        return f"{self.oracle_base_url.rstrip('/')}/functions/v1/{self.oracle_function_name}"
