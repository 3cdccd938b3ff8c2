"""LLM client configuration for SQL generation."""

from typing import Optional

from langchain_openai import ChatOpenAI
from portkey_ai import PORTKEY_GATEWAY_URL, createHeaders

from querysafe.config import settings
from querysafe.exceptions.base import ConfigurationError
from querysafe.logging import get_logger

logger = get_logger(__name__)


class LLMNotConfiguredError(ConfigurationError):
    """Raised when SQL generation is requested before the LLM is configured."""

    def __init__(self, message: str = "LLM has not been configured") -> None:
        super().__init__(message, config_key="PORTKEY_API_KEY")


class LLMConfig:
    """Holds the LangChain chat client routed through the Portkey gateway."""

    def __init__(self):
        self._llm: Optional[ChatOpenAI] = None
        self._is_configured: bool = False

    def configure_llm(self) -> None:
        """Build the chat client; without a Portkey key the client stays unconfigured."""
        if not settings.PORTKEY_API_KEY:
            logger.warning("PORTKEY_API_KEY not set; SQL generation is disabled")
            self._is_configured = False
            return

        try:
            logger.info("Configuring LLM with LangChain and Portkey AI...")

            headers = createHeaders(api_key=settings.PORTKEY_API_KEY, virtual_key=settings.PORTKEY_VIRTUAL_KEY)
            self._llm = ChatOpenAI(
                api_key="X-API-KEY",  # type: ignore[arg-type]
                base_url=PORTKEY_GATEWAY_URL,
                default_headers=headers,
                model=settings.LLM_MODEL,
                temperature=settings.LLM_TEMPERATURE,
            )
            self._is_configured = True

            logger.info("LLM configured", model=settings.LLM_MODEL)
        except Exception as e:
            logger.error("Failed to configure LLM", error=str(e))
            self._is_configured = False
            raise

    def get_llm(self) -> ChatOpenAI:
        """Return the configured client.

        Raises:
            LLMNotConfiguredError: If ``configure_llm`` has not produced a client

        """
        if not self._is_configured or self._llm is None:
            raise LLMNotConfiguredError()
        return self._llm

    @property
    def is_configured(self) -> bool:
        return self._is_configured


llm_config = LLMConfig()
