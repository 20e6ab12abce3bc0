"""Bundled model streaming providers."""

from rein.providers.anthropic import AnthropicProvider

__all__ = ["AnthropicProvider"]
