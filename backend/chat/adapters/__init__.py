from .openrouter_adapter import OpenRouterAdapter

__all__ = ["OpenRouterAdapter"]
