"""
Chat model construction for the three stages.
Models are built lazily so a missing key surfaces as a ConfigurationError
at stage start instead of an import-time crash.
"""
import logging
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from arborkb.config import settings
from arborkb.errors import ConfigurationError

logger = logging.getLogger(__name__)

_models: dict[tuple, BaseChatModel] = {}


def ensure_stage_configured() -> None:
    """Fail fast when the selected provider has no API key."""
    if settings.llm_provider == "openai" and not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    if settings.llm_provider == "google" and not settings.google_api_key:
        raise ConfigurationError("GOOGLE_API_KEY is not configured")


def get_chat_model(model: str, max_tokens: int | None = None) -> BaseChatModel:
    ensure_stage_configured()
    key = (settings.llm_provider, model, max_tokens)
    if key not in _models:
        if settings.llm_provider == "google":
            _models[key] = ChatGoogleGenerativeAI(
                model=model,
                temperature=0.0,
                google_api_key=settings.google_api_key,
                timeout=settings.llm_timeout_seconds,
                max_output_tokens=max_tokens,
            )
        else:
            _models[key] = ChatOpenAI(
                model=model,
                temperature=0.0,
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
                max_tokens=max_tokens,
            )
        logger.info("Initialised %s chat model %s", settings.llm_provider, model)
    return _models[key]
