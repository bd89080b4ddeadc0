"""Usage data sources: local CLI logs and the remote Admin API."""

from .base import (
    CredentialCheck,
    CredentialStatus,
    LocalLogProvider,
    Provider,
    ProviderKind,
    ScanResult,
    SourceFile,
    build_provider,
)
from .claude import ClaudeProvider
from .claude_api import ClaudeApiProvider
from .gemini import GeminiProvider
from .zai import ZaiProvider

__all__ = [
    "ClaudeApiProvider",
    "ClaudeProvider",
    "CredentialCheck",
    "CredentialStatus",
    "GeminiProvider",
    "LocalLogProvider",
    "Provider",
    "ProviderKind",
    "ScanResult",
    "SourceFile",
    "ZaiProvider",
    "build_provider",
]
