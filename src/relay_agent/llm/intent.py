"""
Best-effort tool intent extraction for backends without native function calling.

Local models often answer "create index.html" with a fenced code block instead
of a tool call. The extractor turns such answers into write_file calls so they
flow through the normal approval and execution path.
"""

import re
import secrets
import time
from abc import ABC, abstractmethod
from pathlib import Path

from .base import FunctionCall

LANGUAGE_EXTENSIONS: dict[str, list[str]] = {
    "html": ["html", "htm"],
    "css": ["css"],
    "javascript": ["js", "mjs"],
    "typescript": ["ts"],
    "python": ["py"],
    "java": ["java"],
    "cpp": ["cpp", "cxx", "cc"],
    "c": ["c"],
    "csharp": ["cs"],
    "php": ["php"],
    "ruby": ["rb"],
    "go": ["go"],
    "rust": ["rs"],
    "json": ["json"],
    "xml": ["xml"],
    "yaml": ["yaml", "yml"],
    "markdown": ["md"],
    "shell": ["sh", "bash"],
    "sql": ["sql"],
}

_HTML_DOC = re.compile(r"(<!DOCTYPE html[\s\S]*?</html>)", re.IGNORECASE)
_FENCED_WITH_LANG = re.compile(r"```(\w+)\n([\s\S]*?)\n```")
_FENCED_NO_LANG = re.compile(r"```\n([\s\S]*?)\n```")
_QUOTED_NAME = re.compile(r"[\"'`]([a-zA-Z0-9_/.-]+\.[a-zA-Z0-9]+)[\"'`]")


def _new_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def extension_for(language: str) -> str | None:
    language = language.lower()
    for lang, exts in LANGUAGE_EXTENSIONS.items():
        if language == lang or language in exts:
            return exts[0]
    return None


def detect_language(content: str) -> str | None:
    """Guess a language for an unlabeled code block."""
    if "<!DOCTYPE" in content or "<html" in content or "<div" in content:
        return "html"
    stripped = content.strip()
    if stripped.startswith("{") and stripped.endswith("}") and '"' in content:
        return "json"
    if "def " in content or "import " in content or "print(" in content:
        return "python"
    if "function" in content or "console.log" in content or "const " in content or "let " in content:
        return "javascript"
    if "{" in content and "}" in content and ":" in content:
        return "css"
    return None


class IntentExtractor(ABC):
    """Strategy that derives function calls from free text."""

    @abstractmethod
    def extract(self, text: str) -> list[FunctionCall]:
        pass


class FileCreationIntentExtractor(IntentExtractor):
    """Detect "create file X" answers and emit write_file calls."""

    tool_name = "write_file"

    def __init__(self, working_dir: str | Path = ".", default_subdir: str = "generated"):
        self.working_dir = Path(working_dir)
        self.default_subdir = default_subdir

    def extract(self, text: str) -> list[FunctionCall]:
        detected = self._detect(text)
        if detected is None:
            return []
        file_name, content = detected
        return [
            FunctionCall(
                name=self.tool_name,
                args={"file_path": str(self.resolve_path(file_name)), "content": content},
                id=_new_call_id(),
            )
        ]

    def _detect(self, text: str) -> tuple[str, str] | None:
        match = _HTML_DOC.search(text)
        if match:
            return self.file_name(text, "html"), match.group(1)

        match = _FENCED_WITH_LANG.search(text)
        if match and match.group(2).strip():
            ext = extension_for(match.group(1))
            if ext:
                return self.file_name(text, ext), match.group(2)

        match = _FENCED_NO_LANG.search(text)
        if match and match.group(1).strip():
            language = detect_language(match.group(1))
            ext = extension_for(language) if language else None
            if ext:
                return self.file_name(text, ext), match.group(1)

        return None

    def file_name(self, text: str, extension: str) -> str:
        explicit = re.search(rf"([a-zA-Z0-9_/-]+\.{re.escape(extension)})\b", text, re.IGNORECASE)
        if explicit:
            return explicit.group(1)
        quoted = _QUOTED_NAME.search(text)
        if quoted:
            return quoted.group(1)
        return f"generated_{str(int(time.time() * 1000))[-6:]}.{extension}"

    def resolve_path(self, file_name: str) -> Path:
        path = Path(file_name)
        if path.is_absolute():
            return path
        if len(path.parts) > 1:
            return self.working_dir / path
        return self.working_dir / self.default_subdir / path
