"""AI client registry with configuration-driven provider selection.

Maps provider name strings to client classes. Use get_ai_client() to
instantiate a client by name with provider-specific configuration.
"""

from session_processor.ai.gemini import GeminiClient
from session_processor.utils.errors import PreconditionError

AI_CLIENTS: dict[str, type[GeminiClient]] = {
    "gemini": GeminiClient,
}


def get_ai_client(provider: str = "gemini", **kwargs: object) -> GeminiClient:
    """Create an AI client instance by provider name.

    Args:
        provider: Provider name (e.g., "gemini").
        **kwargs: Client-specific configuration passed to the constructor.

    Returns:
        An initialized client implementing every AI interface.

    Raises:
        PreconditionError: If the provider name is not registered.
    """
    client_cls = AI_CLIENTS.get(provider)
    if not client_cls:
        available = ", ".join(sorted(AI_CLIENTS.keys()))
        raise PreconditionError(
            f"Unknown AI provider: '{provider}'. Available: {available}"
        )
    return client_cls(**kwargs)
