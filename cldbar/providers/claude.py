"""Local Claude Code account: ``<config_dir>/projects/<project>/<session>.jsonl``."""

from __future__ import annotations

import logging
from pathlib import Path

from cldbar.providers.base import LocalLogProvider, ProviderKind, SourceFile
from cldbar.token_tracker.parsers import LogFormat

logger = logging.getLogger(__name__)


class ClaudeProvider(LocalLogProvider):
    kind = ProviderKind.LOCAL_CLAUDE
    provider_type = "claude"
    display_name = "Claude"

    @property
    def projects_dir(self) -> Path:
        return self.profile.config_path / "projects"

    def discover(self) -> list[SourceFile]:
        """Every transcript under projects/, including subagent transcripts."""
        if not self.projects_dir.is_dir():
            logger.debug("No Claude projects directory at %s", self.projects_dir)
            return []
        files = []
        for path in sorted(self.projects_dir.rglob("*.jsonl")):
            src = self._stat(path, LogFormat.CLAUDE_TRANSCRIPT)
            if src is not None:
                files.append(src)
        return files
