"""Framework hints and stack detection.

Per-file hints come from path globs and content markers. The project-level
stack is derived from dependency manifests plus the aggregated hints and
language counts of the scanned files.
"""

import json
import tomllib
from collections import Counter
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from .exclusion import glob_to_regex
from .models import FileRecord

logger = structlog.get_logger(__name__)

# Build and dependency manifests. A change to any of these invalidates the
# detected stack, so incremental updates fall back to a full scan.
STACK_FILES: frozenset[str] = frozenset(
    {
        "composer.json",
        "composer.lock",
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "vite.config.js",
        "vite.config.ts",
        "webpack.mix.js",
        "tailwind.config.js",
        "tailwind.config.ts",
        "pyproject.toml",
        "requirements.txt",
        "setup.py",
        "setup.cfg",
        "go.mod",
        "Cargo.toml",
        "Gemfile",
    }
)

DEFAULT_PATH_PATTERNS: dict[str, list[str]] = {
    "livewire": ["app/Livewire/*", "app/Http/Livewire/*", "resources/views/livewire/*"],
    "inertia": [
        "resources/js/Pages/*",
        "resources/js/pages/*",
        "resources/ts/Pages/*",
        "resources/ts/pages/*",
    ],
    "blade": ["resources/views/*.blade.php", "resources/views/**/*.blade.php"],
    "vue": ["resources/js/**/*.vue", "resources/ts/**/*.vue", "**/*.vue"],
    "react": ["resources/js/**/*.jsx", "resources/js/**/*.tsx", "resources/ts/**/*.tsx"],
}

DEFAULT_CONTENT_MARKERS: dict[str, list[str]] = {
    "livewire": ["extends Livewire\\Component", "use Livewire\\", "@livewire(", "<livewire:"],
    "inertia": ["Inertia::render", "@inertia", "createInertiaApp", "usePage("],
    "vue": ["defineComponent", "createApp(", "Vue.component"],
    "react": ["React.", "useState", "useEffect", "createRoot"],
    "fastapi": ["from fastapi import", "FastAPI("],
    "django": ["from django.", "import django"],
    "flask": ["from flask import", "Flask(__name__)"],
}

# Dependency name -> framework label, per manifest type.
_COMPOSER_FRAMEWORKS = {
    "laravel/framework": "laravel",
    "livewire/livewire": "livewire",
    "inertiajs/inertia-laravel": "inertia",
    "symfony/framework-bundle": "symfony",
}
_NPM_FRAMEWORKS = {
    "vue": "vue",
    "react": "react",
    "svelte": "svelte",
    "next": "nextjs",
    "nuxt": "nuxt",
    "@inertiajs/vue3": "inertia",
    "@inertiajs/react": "inertia",
    "tailwindcss": "tailwind",
    "vite": "vite",
    "express": "express",
}
_PYTHON_FRAMEWORKS = {
    "django": "django",
    "flask": "flask",
    "fastapi": "fastapi",
    "sqlalchemy": "sqlalchemy",
    "pydantic": "pydantic",
}


class StackInfo(BaseModel):
    """Detected technology stack of a project.

    Attributes:
        languages: Language -> file count, most common first.
        frameworks: Sorted framework labels.
        manifests: Dependency manifests found at the repository root.
        primary_language: Most common non-data language, if any.
    """

    languages: dict[str, int] = Field(default_factory=dict, description="Files per language")
    frameworks: list[str] = Field(default_factory=list, description="Detected frameworks")
    manifests: list[str] = Field(default_factory=list, description="Manifest files found")
    primary_language: str | None = Field(None, description="Dominant language")


def touches_stack_files(paths: set[str] | list[str]) -> bool:
    """Check whether any changed path is a build or dependency manifest."""
    return any(Path(path).name in STACK_FILES for path in paths)


class FrameworkDetector:
    """Detects framework usage per file and per project.

    Attributes:
        path_patterns: Framework -> path globs.
        content_markers: Framework -> substrings that indicate usage.
    """

    _NON_CODE_LANGUAGES = {"json", "yaml", "markdown", "mdx", "plaintext", "xml", "toml", "dotenv"}

    def __init__(
        self,
        path_patterns: dict[str, list[str]] | None = None,
        content_markers: dict[str, list[str]] | None = None,
    ) -> None:
        self.path_patterns = path_patterns or DEFAULT_PATH_PATTERNS
        self.content_markers = content_markers or DEFAULT_CONTENT_MARKERS

    def hints_for(self, path: str, content: str | None) -> list[str]:
        """Return the frameworks a single file appears to use.

        Args:
            path: Relative path of the file.
            content: Decoded content, None for metadata-only files.

        Returns:
            Sorted list of framework labels.
        """
        hints: set[str] = set()

        for framework, patterns in self.path_patterns.items():
            if any(glob_to_regex(pattern).match(path) for pattern in patterns):
                hints.add(framework)

        if content:
            for framework, markers in self.content_markers.items():
                if any(marker and marker in content for marker in markers):
                    hints.add(framework)

        return sorted(hints)

    def detect_stack(self, root: str | Path, files: list[FileRecord]) -> StackInfo:
        """Detect the stack of a scanned working copy.

        Args:
            root: Repository root on disk.
            files: Manifest records of the scan.

        Returns:
            StackInfo describing languages and frameworks.
        """
        root_path = Path(root)
        frameworks: set[str] = set()
        manifests: list[str] = []

        for name in sorted(STACK_FILES):
            manifest = root_path / name
            if not manifest.is_file():
                continue
            manifests.append(name)
            try:
                frameworks.update(self._frameworks_from_manifest(manifest))
            except (OSError, ValueError) as e:
                logger.warning("stack_manifest_unreadable", manifest=name, error=str(e))

        for record in files:
            frameworks.update(record.framework_hints)

        counts = Counter(record.language for record in files if not record.is_binary)
        languages = dict(counts.most_common())
        primary = next(
            (lang for lang, _ in counts.most_common() if lang not in self._NON_CODE_LANGUAGES),
            None,
        )

        stack = StackInfo(
            languages=languages,
            frameworks=sorted(frameworks),
            manifests=manifests,
            primary_language=primary,
        )
        logger.info(
            "stack_detected",
            primary_language=primary,
            frameworks=stack.frameworks,
            manifests=manifests,
        )
        return stack

    def _frameworks_from_manifest(self, manifest: Path) -> set[str]:
        name = manifest.name
        found: set[str] = set()

        if name == "composer.json":
            data = json.loads(manifest.read_text(encoding="utf-8"))
            deps = {**data.get("require", {}), **data.get("require-dev", {})}
            found.update(label for dep, label in _COMPOSER_FRAMEWORKS.items() if dep in deps)
        elif name == "package.json":
            data = json.loads(manifest.read_text(encoding="utf-8"))
            deps = {**data.get("dependencies", {}), **data.get("devDependencies", {})}
            found.update(label for dep, label in _NPM_FRAMEWORKS.items() if dep in deps)
        elif name == "pyproject.toml":
            data = tomllib.loads(manifest.read_text(encoding="utf-8"))
            deps = " ".join(data.get("project", {}).get("dependencies", [])).lower()
            found.update(label for dep, label in _PYTHON_FRAMEWORKS.items() if dep in deps)
        elif name == "requirements.txt":
            deps = manifest.read_text(encoding="utf-8").lower()
            found.update(label for dep, label in _PYTHON_FRAMEWORKS.items() if dep in deps)
        elif name == "go.mod":
            found.add("go-modules")
        elif name == "Cargo.toml":
            found.add("cargo")

        return found
