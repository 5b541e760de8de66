from abc import ABC, abstractmethod


class ProviderError(RuntimeError):
    """Raised when an upstream LLM API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AIProvider(ABC):
    """Abstract base class for all AI providers."""

    DEFAULT_REASONING_MODEL = ""
    DEFAULT_UTILITY_MODEL = ""

    def __init__(
        self,
        api_key: str,
        reasoning_model: str | None = None,
        utility_model: str | None = None,
    ):
        self.api_key = api_key
        self._reasoning_model = reasoning_model
        self._utility_model = utility_model

    @abstractmethod
    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        max_tokens: int = 4096,
    ) -> dict:
        """Send a non-streaming chat request to the provider.

        Args:
            messages: List of message dicts with role and content.
            model: Model identifier to use.
            system: Optional system prompt.
            max_tokens: Upper bound on generated tokens.

        Returns:
            dict with content, tokens_in, tokens_out, model.

        Raises:
            ProviderError if the upstream API rejects the request.
        """
        ...

    def get_reasoning_model(self) -> str:
        """Return the reasoning (higher-capability) model identifier."""
        return self._reasoning_model or self.DEFAULT_REASONING_MODEL

    def get_utility_model(self) -> str:
        """Return the utility (faster/cheaper) model identifier."""
        return self._utility_model or self.DEFAULT_UTILITY_MODEL
