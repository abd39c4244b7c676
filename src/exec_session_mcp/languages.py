"""Language registry.

Maps a language tag (as found on a fenced code block) to the interpreter
command and the arguments that make it run a single code argument.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

__all__ = [
    "LanguageSpec",
    "LanguageRegistry",
    "UnsupportedLanguageError",
    "BUILTIN_LANGUAGES",
    "default_registry",
    "resolve",
]

logger = logging.getLogger(__name__)


class UnsupportedLanguageError(LookupError):
    """No interpreter is registered for the tag."""

    def __init__(self, tag: str) -> None:
        super().__init__(f"Unsupported language: {tag}")
        self.tag = tag


@dataclass(frozen=True)
class LanguageSpec:
    """Interpreter invocation for one language.

    Attributes:
        command: Interpreter executable name or path
        arg_prefix: Arguments placed before the code argument (e.g. ("-c",))
    """

    command: str
    arg_prefix: tuple[str, ...] = ()

    def argv(self, code: str) -> list[str]:
        """Build argv running ``code`` as a single argument."""
        return [self.command, *self.arg_prefix, code]


BUILTIN_LANGUAGES: dict[str, LanguageSpec] = {
    "bash": LanguageSpec("bash", ("-c",)),
    "sh": LanguageSpec("sh", ("-c",)),
    "shell": LanguageSpec("bash", ("-c",)),
    "zsh": LanguageSpec("zsh", ("-c",)),
    "python": LanguageSpec("python3", ("-c",)),
    "python3": LanguageSpec("python3", ("-c",)),
    "py": LanguageSpec("python3", ("-c",)),
    "javascript": LanguageSpec("node", ("-e",)),
    "js": LanguageSpec("node", ("-e",)),
    "node": LanguageSpec("node", ("-e",)),
    "powershell": LanguageSpec("powershell", ("-Command",)),
    "ps1": LanguageSpec("powershell", ("-Command",)),
    "cmd": LanguageSpec("cmd", ("/c",)),
    "batch": LanguageSpec("cmd", ("/c",)),
}

# Substitute binaries per platform family, applied after lookup
_WINDOWS_OVERRIDES = {"python": "python", "python3": "python", "py": "python"}
_POSIX_OVERRIDES = {"powershell": "pwsh", "ps1": "pwsh"}


def _normalize(tag: str) -> str:
    return tag.strip().lower()


class LanguageRegistry:
    """Case-insensitive table of language tags.

    Example:
        registry = LanguageRegistry()
        registry.register("ruby", "ruby", ["-e"])
        spec = registry.resolve("Ruby")
        argv = spec.argv("puts 1")
    """

    def __init__(
        self,
        languages: Mapping[str, LanguageSpec] | None = None,
        platform: str | None = None,
    ) -> None:
        self._languages: dict[str, LanguageSpec] = {
            _normalize(tag): spec
            for tag, spec in (BUILTIN_LANGUAGES if languages is None else languages).items()
        }
        self.platform = platform or sys.platform

    def register(self, tag: str, command: str, arg_prefix: Sequence[str] = ()) -> None:
        """Register or replace a language tag."""
        key = _normalize(tag)
        if not key or not command:
            raise ValueError("language tag and command must be non-empty")
        self._languages[key] = LanguageSpec(command, tuple(arg_prefix))
        logger.debug(f"Registered language {key}: {command} {' '.join(arg_prefix)}")

    def resolve(self, tag: str) -> LanguageSpec:
        """Look up the interpreter for a tag.

        Args:
            tag: Language tag, case-insensitive

        Returns:
            The interpreter spec with platform overrides applied

        Raises:
            UnsupportedLanguageError: If the tag is not registered
        """
        key = _normalize(tag or "")
        spec = self._languages.get(key)
        if spec is None:
            raise UnsupportedLanguageError(tag)

        overrides = _WINDOWS_OVERRIDES if self.platform == "win32" else _POSIX_OVERRIDES
        command = overrides.get(key)
        if command is not None:
            return LanguageSpec(command, spec.arg_prefix)
        return spec

    def supported(self) -> list[str]:
        """Registered tags, sorted."""
        return sorted(self._languages)

    def __contains__(self, tag: object) -> bool:
        return isinstance(tag, str) and _normalize(tag) in self._languages


def default_registry(extra: Mapping[str, Sequence[str]] | None = None) -> LanguageRegistry:
    """Build a registry with the builtin table plus extra registrations.

    Args:
        extra: Mapping of tag to [command, *args] (see ``Config.languages``)
    """
    registry = LanguageRegistry()
    for tag, invocation in (extra or {}).items():
        if not invocation:
            continue
        registry.register(tag, invocation[0], invocation[1:])
    return registry


_DEFAULT = LanguageRegistry()


def resolve(tag: str) -> LanguageSpec:
    """Resolve a tag against the builtin table."""
    return _DEFAULT.resolve(tag)
