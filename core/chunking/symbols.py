"""Lightweight symbol and import extraction.

Pattern-based, per language family. The output is advisory metadata for
retrieval, not a parse: false positives and misses are acceptable.
"""

import re

from pydantic import BaseModel, ConfigDict, Field

MAX_USED_SYMBOLS = 50
MAX_REFERENCES = 50

_M = re.MULTILINE

_DECLARATIONS: dict[str, list[re.Pattern[str]]] = {
    "python": [
        re.compile(r"^\s*(?:async\s+)?def\s+(\w+)", _M),
        re.compile(r"^\s*class\s+(\w+)", _M),
    ],
    "php": [
        re.compile(r"^\s*(?:abstract\s+|final\s+|readonly\s+)*class\s+(\w+)", _M),
        re.compile(r"^\s*(?:interface|trait|enum)\s+(\w+)", _M),
        re.compile(
            r"^\s*(?:(?:public|private|protected|static|abstract|final)\s+)*function\s+&?(\w+)",
            _M,
        ),
    ],
    "javascript": [
        re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)", _M),
        re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)", _M),
        re.compile(
            r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>",
            _M,
        ),
        re.compile(r"^\s*(?:export\s+)?(?:interface|enum)\s+(\w+)", _M),
        re.compile(r"^\s*(?:export\s+)?type\s+(\w+)\s*=", _M),
    ],
    "go": [
        re.compile(r"^func\s+(?:\([^)]*\)\s*)?(\w+)", _M),
        re.compile(r"^type\s+(\w+)\s+(?:struct|interface)", _M),
    ],
    "ruby": [
        re.compile(r"^\s*def\s+(?:self\.)?(\w+[?!]?)", _M),
        re.compile(r"^\s*(?:class|module)\s+(\w+)", _M),
    ],
    "java": [
        re.compile(
            r"^\s*(?:(?:public|private|protected|internal|static|abstract|final|sealed|data)\s+)*"
            r"(?:class|interface|enum|record|object)\s+(\w+)",
            _M,
        ),
        re.compile(
            r"^\s*(?:(?:public|private|protected|internal|static|final|override|async|virtual)\s+)+"
            r"[\w<>\[\], \t]*?[ \t]*(\w+)[ \t]*\(",
            _M,
        ),
        re.compile(r"^\s*(?:(?:private|public|internal|override|suspend)\s+)*fun\s+(\w+)", _M),
    ],
    "rust": [
        re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+(\w+)", _M),
        re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait)\s+(\w+)", _M),
    ],
}

_IMPORTS: dict[str, list[re.Pattern[str]]] = {
    "python": [re.compile(r"^\s*((?:from\s+[\w.]+\s+)?import\s+[^#\n]+)", _M)],
    "php": [
        re.compile(r"^\s*(use\s+[\w\\]+(?:\s+as\s+\w+)?)\s*;", _M),
        re.compile(r"^\s*((?:require|include)(?:_once)?\s*\(?[^;\n]+)", _M),
    ],
    "javascript": [
        re.compile(r"^\s*(import\s+[^;\n]+)", _M),
        re.compile(r"(require\(\s*['\"][^'\"]+['\"]\s*\))"),
    ],
    "go": [
        re.compile(r'^\s*import\s+(?:\w+\s+)?("[^"]+")', _M),
        re.compile(r'^\s+(?:\w+\s+)?("[\w./-]+")\s*$', _M),
    ],
    "ruby": [re.compile(r"^\s*(require(?:_relative)?\s+['\"][^'\"]+['\"])", _M)],
    "java": [
        re.compile(r"^\s*(import\s+(?:static\s+)?[\w.*]+)", _M),
        re.compile(r"^\s*(using\s+[\w.]+)\s*;", _M),
    ],
    "rust": [re.compile(r"^\s*((?:pub\s+)?use\s+[^;]+);", _M)],
}

_FAMILIES = {
    "python": "python",
    "php": "php",
    "blade": "php",
    "javascript": "javascript",
    "javascriptreact": "javascript",
    "typescript": "javascript",
    "typescriptreact": "javascript",
    "vue": "javascript",
    "svelte": "javascript",
    "go": "go",
    "ruby": "ruby",
    "java": "java",
    "kotlin": "java",
    "csharp": "java",
    "rust": "rust",
}

_CALL = re.compile(r"\b([A-Za-z_]\w*)\s*\(")
_QUALIFIED = re.compile(r"\b([A-Z]\w*(?:(?:::|\.)[A-Za-z_]\w*)+)")
_NAMESPACED = re.compile(r"(\\?[A-Z]\w*(?:\\[A-Z]\w*)+)")

_KEYWORDS = frozenset(
    {
        "if", "elif", "else", "for", "foreach", "while", "switch", "case", "return", "catch",
        "function", "fn", "func", "def", "class", "new", "typeof", "sizeof", "await", "async",
        "print", "echo", "isset", "empty", "unset", "array", "list", "match", "with", "not",
        "and", "or", "in", "is", "lambda", "yield", "super", "this", "self", "import",
        "require", "include", "use", "assert", "throw", "raise", "except", "try", "do",
    }
)


class SymbolInfo(BaseModel):
    """Symbols and imports found in a piece of source text."""

    model_config = ConfigDict(frozen=True)

    declared: list[str] = Field(default_factory=list, description="Declared symbols")
    used: list[str] = Field(default_factory=list, description="Called identifiers")
    imports: list[str] = Field(default_factory=list, description="Import statements")
    references: list[str] = Field(default_factory=list, description="Qualified references")


def _unique(values) -> list[str]:
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


class SymbolExtractor:
    """Extracts symbols with per-language regular expressions."""

    def family_for(self, language: str | None) -> str | None:
        """Map a detected language to its pattern family."""
        if language is None:
            return None
        return _FAMILIES.get(language)

    def declared(self, content: str, language: str | None) -> list[str]:
        family = self.family_for(language)
        if family is None:
            return []
        return _unique(
            match.group(1)
            for pattern in _DECLARATIONS[family]
            for match in pattern.finditer(content)
        )

    def imports(self, content: str, language: str | None) -> list[str]:
        family = self.family_for(language)
        if family is None:
            return []
        return _unique(
            match.group(1) for pattern in _IMPORTS[family] for match in pattern.finditer(content)
        )

    def extract(self, content: str, language: str | None) -> SymbolInfo:
        """Extract declared and used symbols, imports and references.

        Args:
            content: Source text.
            language: Detected language of the text.

        Returns:
            SymbolInfo; empty for languages without patterns.
        """
        family = self.family_for(language)
        if family is None or not content:
            return SymbolInfo()

        declared = self.declared(content, language)
        declared_set = set(declared)

        used = [
            name
            for name in _unique(m.group(1) for m in _CALL.finditer(content))
            if name not in _KEYWORDS and name not in declared_set
        ][:MAX_USED_SYMBOLS]

        references = _unique(
            [m.group(1) for m in _QUALIFIED.finditer(content)]
            + ([m.group(1) for m in _NAMESPACED.finditer(content)] if family == "php" else [])
        )[:MAX_REFERENCES]

        return SymbolInfo(
            declared=declared,
            used=used,
            imports=self.imports(content, language),
            references=references,
        )
