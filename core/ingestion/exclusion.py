"""Exclusion rules and file classification.

The matcher decides, for a repository-relative path, whether the file is
scanned at all and classifies included files by language and binary
status. It is a pure function of the path, the rule set and (for binary
sniffing) the first bytes of the file.
"""

import re
from functools import lru_cache
from pathlib import Path, PurePosixPath

import structlog
from pydantic import BaseModel, ConfigDict

from .models import ExclusionRules

logger = structlog.get_logger(__name__)

SNIFF_BYTES = 8192

_SPECIAL_FILENAMES = {
    "dockerfile": "dockerfile",
    "makefile": "makefile",
    "gemfile": "ruby",
    "rakefile": "ruby",
    "procfile": "procfile",
    "artisan": "php",
}

_BUILD_OUTPUT_DIRECTORIES = {
    "dist",
    "build",
    "public/build",
    "public/hot",
    ".output",
    ".next",
    ".nuxt",
}


class Classification(BaseModel):
    """Language and binary status of a file."""

    model_config = ConfigDict(frozen=True)

    language: str
    is_binary: bool


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**``-aware glob into a compiled regular expression.

    ``**/`` matches zero or more leading directories, a trailing ``/**``
    matches the directory itself and everything below it, ``*`` and ``?``
    never cross a path separator.

    Args:
        pattern: Glob pattern using forward slashes.

    Returns:
        Compiled, fully anchored regular expression.
    """
    i = 0
    out: list[str] = []
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == len(pattern):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def read_header(file_path: Path, size: int = SNIFF_BYTES) -> bytes | None:
    """Read the first bytes of a file for binary sniffing.

    Returns:
        The header bytes, or None if the file cannot be read.
    """
    try:
        with open(file_path, "rb") as handle:
            return handle.read(size)
    except OSError as e:
        logger.debug("header_read_failed", path=str(file_path), error=str(e))
        return None


class ExclusionMatcher:
    """Applies a versioned rule set to repository paths.

    Exclusion is the union of four rule kinds, checked in order: directory
    segments, glob patterns, exact file names and extensions. The first
    matching rule is reported as the exclusion reason.

    Attributes:
        rules: The rule set in force.
    """

    def __init__(self, rules: ExclusionRules | None = None) -> None:
        """Initialize the matcher and apply the re-inclusion toggles.

        Args:
            rules: Exclusion rules. Uses defaults if not provided.
        """
        self.rules = rules or ExclusionRules()
        toggles = self.rules.toggles

        directories = set(self.rules.directories)
        patterns = list(self.rules.patterns)
        extensions = {ext.lower().lstrip(".") for ext in self.rules.extensions}

        if toggles.include_vendor:
            directories.discard("vendor")
            patterns = [p for p in patterns if "/vendor/" not in p]
        if toggles.include_node_modules:
            directories.discard("node_modules")
            patterns = [p for p in patterns if "/node_modules/" not in p]
        if toggles.include_storage:
            directories.discard("storage")
            patterns = [p for p in patterns if "/storage/" not in p]
        if toggles.include_build_output:
            directories -= _BUILD_OUTPUT_DIRECTORIES
        if toggles.include_lock_files:
            extensions.discard("lock")
        if toggles.include_source_maps:
            extensions.discard("map")
        if toggles.include_minified:
            extensions -= {"min.js", "min.css"}

        self._directories = sorted(tuple(d.strip("/").split("/")) for d in directories)
        self._patterns = patterns
        self._files = set(self.rules.files)
        # Longest first so "min.js" is reported before a plain "js" rule.
        self._extensions = sorted(extensions, key=len, reverse=True)
        self._binary_extensions = {ext.lower() for ext in self.rules.binary_extensions}
        self._multi_part_extensions = sorted(
            (ext for ext in self.rules.extension_map if "." in ext), key=len, reverse=True
        )

        logger.debug(
            "ExclusionMatcher initialized",
            rules_version=self.rules_version,
            directories=len(self._directories),
            patterns=len(self._patterns),
        )

    @property
    def rules_version(self) -> str:
        """Version string of the active rule set."""
        return self.rules.schema_version

    def _match_directory(self, segments: list[str]) -> str | None:
        for rule in self._directories:
            width = len(rule)
            for start in range(len(segments) - width + 1):
                if tuple(segments[start : start + width]) == rule:
                    return "/".join(rule)
        return None

    def _match_pattern(self, path: str) -> str | None:
        for pattern in self._patterns:
            if glob_to_regex(pattern).match(path):
                return pattern
        return None

    def directory_exclusion_reason(self, relative_dir: str) -> str | None:
        """Check whether a whole directory is excluded.

        Used by the scanner to prune the walk.

        Args:
            relative_dir: Directory path relative to the repository root.

        Returns:
            Exclusion reason, or None if the directory is walked.
        """
        normalized = relative_dir.replace("\\", "/").strip("/")
        if not normalized:
            return None

        segment = self._match_directory(normalized.split("/"))
        if segment:
            return f"directory:{segment}"

        pattern = self._match_pattern(normalized)
        if pattern:
            return f"pattern:{pattern}"

        return None

    def exclusion_reason(self, path: str) -> str | None:
        """Return the first rule that excludes a file path.

        Args:
            path: File path relative to the repository root.

        Returns:
            Reason such as ``directory:vendor`` or ``extension:min.js``,
            or None if the file is included.
        """
        normalized = path.replace("\\", "/").strip("/")
        parts = normalized.split("/")

        segment = self._match_directory(parts[:-1])
        if segment:
            return f"directory:{segment}"

        pattern = self._match_pattern(normalized)
        if pattern:
            return f"pattern:{pattern}"

        filename = parts[-1]
        if filename in self._files:
            return f"filename:{filename}"

        lowered = filename.lower()
        for ext in self._extensions:
            if lowered.endswith("." + ext):
                return f"extension:{ext}"

        return None

    def should_exclude(self, path: str) -> bool:
        """Check whether a file path is excluded from scanning."""
        return self.exclusion_reason(path) is not None

    def extension_of(self, path: str) -> str | None:
        """Return the lower-cased extension of a path.

        Multi-part extensions known to the language map (``blade.php``,
        ``env.example``) win over the final suffix. Dotfiles such as
        ``.env`` report the part after the dot.
        """
        name = PurePosixPath(path.replace("\\", "/")).name.lower()

        for ext in self._multi_part_extensions:
            if name.endswith("." + ext):
                return ext

        if "." not in name.lstrip(".") and not name.startswith("."):
            return None

        ext = name.rsplit(".", 1)[-1]
        return ext or None

    def language_for(self, path: str) -> str:
        """Detect the language of a path from its extension or name."""
        ext = self.extension_of(path)
        if ext and ext in self.rules.extension_map:
            return self.rules.extension_map[ext]

        name = PurePosixPath(path.replace("\\", "/")).name.lower()
        return _SPECIAL_FILENAMES.get(name, "plaintext")

    def is_binary(self, path: str, header: bytes | None) -> bool:
        """Decide whether a file is binary.

        The binary extension list is consulted first. Otherwise the header
        bytes are sniffed: an unreadable file or a null byte means binary.

        Args:
            path: Relative path of the file.
            header: First bytes of the file, None if it could not be read.
        """
        suffix = PurePosixPath(path).suffix.lower().lstrip(".")
        if suffix in self._binary_extensions:
            return True

        if header is None:
            return True

        return b"\x00" in header[:SNIFF_BYTES]

    def classify(self, path: str, header: bytes | None = None) -> Classification:
        """Classify a file by language and binary status.

        Args:
            path: Relative path of the file.
            header: First bytes of the file, None if it could not be read.

        Returns:
            Classification of the file.
        """
        return Classification(
            language=self.language_for(path),
            is_binary=self.is_binary(path, header),
        )
