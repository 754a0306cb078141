"""Auth module - secure storage for API keys."""

from .keychain import KeychainManager

__all__ = ["KeychainManager"]
