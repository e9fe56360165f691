"""Service layer utilities."""

from .provider import (  # noqa: F401
    GenerationProvider,
    HttpGenerationProvider,
    MockGenerationProvider,
    RetryPolicy,
    get_default_provider,
)

__all__ = [
    "GenerationProvider",
    "HttpGenerationProvider",
    "MockGenerationProvider",
    "RetryPolicy",
    "get_default_provider",
]
