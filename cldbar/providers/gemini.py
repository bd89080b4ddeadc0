"""Local Gemini CLI account: ``<home>/tmp/<hash>/chats/session-*.jsonl|.json``.

``GEMINI_CLI_HOME`` overrides the profile's config dir, as the CLI itself does.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cldbar.providers.base import LocalLogProvider, ProviderKind, SourceFile
from cldbar.token_tracker.parsers import detect_format

logger = logging.getLogger(__name__)


class GeminiProvider(LocalLogProvider):
    kind = ProviderKind.LOCAL_GEMINI
    provider_type = "gemini"
    display_name = "Gemini"

    @property
    def home(self) -> Path:
        override = os.environ.get("GEMINI_CLI_HOME")
        if override:
            return Path(override).expanduser()
        return self.profile.config_path

    def discover(self) -> list[SourceFile]:
        base = self.home / "tmp"
        if not base.is_dir():
            logger.debug("No Gemini tmp directory at %s", base)
            return []
        files = []
        for path in sorted(base.glob("*/chats/session-*")):
            fmt = detect_format(path)
            if fmt is None or not path.is_file():
                continue
            src = self._stat(path, fmt)
            if src is not None:
                files.append(src)
        return files
