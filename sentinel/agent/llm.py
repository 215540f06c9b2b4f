"""LLM factory: creates the chat model used for root cause synthesis."""

import logging

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from sentinel.config import Settings

logger = logging.getLogger(__name__)

RCA_TEMPERATURE = 0.3
RCA_MAX_TOKENS = 500


def create_anthropic_chat(
    api_key: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> ChatAnthropic:
    return ChatAnthropic(  # pyright: ignore[reportCallIssue]
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=SecretStr(api_key),
    )


def create_llm(
    settings: Settings,
    temperature: float = RCA_TEMPERATURE,
    model_override: str | None = None,
) -> BaseChatModel | None:
    """Create a chat model for the configured provider.

    Args:
        settings: Application settings (provider, keys, model names).
        temperature: Sampling temperature; low for consistent, factual output.
        model_override: Use this model name instead of the configured one.

    Returns:
        A ChatAnthropic or ChatOpenAI instance, or None when the selected
        provider has no API key (callers fall back to static analysis).
    """
    if settings.llm_provider == "anthropic":
        if not settings.anthropic_api_key:
            logger.info("ANTHROPIC_API_KEY not set, LLM root cause analysis disabled")
            return None
        return create_anthropic_chat(
            api_key=settings.anthropic_api_key,
            model=model_override or settings.anthropic_model,
            temperature=temperature,
            max_tokens=RCA_MAX_TOKENS,
        )

    if not settings.openai_api_key:
        logger.info("OPENAI_API_KEY not set, LLM root cause analysis disabled")
        return None
    return ChatOpenAI(
        model=model_override or settings.openai_model,
        temperature=temperature,
        max_tokens=RCA_MAX_TOKENS,  # pyright: ignore[reportCallIssue]
        api_key=SecretStr(settings.openai_api_key),
        base_url=settings.openai_base_url or None,
    )
