"""Regex-based symbol extraction for code chunks.

Per-language patterns over raw chunk text; nothing is parsed. Results feed
the FTS symbols column and the vector payload.
"""

from __future__ import annotations

import re

from repochat.db.models import ChunkMetadata

_MAX_VARIABLES = 20

_JS_IDENT = r"[a-zA-Z_$][a-zA-Z0-9_$]*"
_IDENT = r"[a-zA-Z_][a-zA-Z0-9_]*"

_FUNCTION_PATTERNS: dict[str, list[str]] = {
    "javascript": [
        rf"function\s+({_JS_IDENT})\s*\(",
        rf"const\s+({_JS_IDENT})\s*=\s*(?:async\s*)?\(",
        rf"({_JS_IDENT})\s*:\s*\([^)]*\)\s*=>",
    ],
    "python": [rf"def\s+({_IDENT})\s*\("],
    "go": [
        rf"func\s+({_IDENT})\s*\(",
        rf"func\s+\([^)]*\)\s+({_IDENT})\s*\(",
    ],
    "java": [rf"(?:public|private|protected|static)\s+[\w<>\[\]]+\s+({_IDENT})\s*\("],
    "c": [rf"^\s*(?:static\s+|extern\s+|inline\s+)*[\w\*]+\s+\**({_IDENT})\s*\([^;]*$"],
    "rust": [rf"fn\s+({_IDENT})\s*[<(]"],
    "php": [rf"function\s+({_IDENT})\s*\("],
    "ruby": [rf"def\s+(?:self\.)?({_IDENT}[?!]?)"],
    "kotlin": [rf"fun\s+({_IDENT})\s*\("],
    "swift": [rf"func\s+({_IDENT})\s*[<(]"],
}
_FUNCTION_PATTERNS["typescript"] = _FUNCTION_PATTERNS["javascript"]
_FUNCTION_PATTERNS["csharp"] = _FUNCTION_PATTERNS["java"]
_FUNCTION_PATTERNS["cpp"] = _FUNCTION_PATTERNS["c"]
_FALLBACK_FUNCTIONS = [rf"function\s+({_IDENT})\s*\(", rf"def\s+({_IDENT})\s*\("]

_CLASS_PATTERNS: dict[str, list[str]] = {
    "javascript": [rf"class\s+({_JS_IDENT})"],
    "typescript": [rf"class\s+({_JS_IDENT})", rf"interface\s+({_JS_IDENT})"],
    "python": [rf"class\s+({_IDENT})"],
    "java": [rf"class\s+({_IDENT})", rf"interface\s+({_IDENT})", rf"enum\s+({_IDENT})"],
    "cpp": [rf"class\s+({_IDENT})", rf"struct\s+({_IDENT})"],
    "c": [rf"struct\s+({_IDENT})\s*\{{"],
    "go": [rf"type\s+({_IDENT})\s+struct", rf"type\s+({_IDENT})\s+interface"],
    "rust": [rf"struct\s+({_IDENT})", rf"trait\s+({_IDENT})", rf"enum\s+({_IDENT})"],
    "php": [rf"class\s+({_IDENT})", rf"interface\s+({_IDENT})"],
    "ruby": [rf"class\s+({_IDENT})", rf"module\s+({_IDENT})"],
    "kotlin": [rf"class\s+({_IDENT})", rf"interface\s+({_IDENT})"],
    "swift": [rf"class\s+({_IDENT})", rf"struct\s+({_IDENT})", rf"protocol\s+({_IDENT})"],
}
_CLASS_PATTERNS["csharp"] = _CLASS_PATTERNS["java"]

_VARIABLE_PATTERNS: dict[str, list[str]] = {
    "javascript": [rf"(?:const|let|var)\s+({_JS_IDENT})"],
    "python": [rf"^({_IDENT})\s*(?::[^=]+)?=(?!=)"],
    "go": [rf"var\s+({_IDENT})", rf"({_IDENT})\s*:="],
    "rust": [rf"let\s+(?:mut\s+)?({_IDENT})"],
}
_VARIABLE_PATTERNS["typescript"] = _VARIABLE_PATTERNS["javascript"]

_TYPE_PATTERNS: dict[str, list[str]] = {
    "typescript": [rf"type\s+({_JS_IDENT})\s*=", rf"interface\s+({_JS_IDENT})"],
    "go": [rf"type\s+({_IDENT})\s+"],
    "rust": [rf"type\s+({_IDENT})\s*="],
    "python": [rf"^({_IDENT})\s*(?::\s*TypeAlias\s*)?=\s*(?:Union|Optional|Literal|Callable)\["],
}

_IMPORT_PATTERNS: dict[str, list[str]] = {
    "javascript": [
        r"import\s+.*\s+from\s+['\"]([^'\"]+)['\"]",
        r"import\s+['\"]([^'\"]+)['\"]",
        r"require\(\s*['\"]([^'\"]+)['\"]\s*\)",
    ],
    "python": [
        r"^\s*import\s+([a-zA-Z_][a-zA-Z0-9_.]*)",
        r"^\s*from\s+([a-zA-Z_.][a-zA-Z0-9_.]*)\s+import",
    ],
    "go": [r"^\s*import\s+\"([^\"]+)\"", r"^\s*(?:\w+\s+)?\"([^\"]+/[^\"]+|[a-z]+)\"\s*$"],
    "java": [r"^\s*import\s+(?:static\s+)?([a-zA-Z_][a-zA-Z0-9_.]*)"],
    "csharp": [r"^\s*using\s+([a-zA-Z_][a-zA-Z0-9_.]*)\s*;"],
    "rust": [r"^\s*use\s+([a-zA-Z_][a-zA-Z0-9_:]*)"],
    "c": [r"^\s*#include\s+[<\"]([^>\"]+)[>\"]"],
    "ruby": [r"^\s*require(?:_relative)?\s+['\"]([^'\"]+)['\"]"],
    "php": [r"^\s*use\s+([a-zA-Z_\\][a-zA-Z0-9_\\]*)\s*;"],
}
_IMPORT_PATTERNS["typescript"] = _IMPORT_PATTERNS["javascript"]
_IMPORT_PATTERNS["cpp"] = _IMPORT_PATTERNS["c"]

# Decision points counted by estimate_complexity().
_COMPLEXITY_RE = re.compile(
    r"\bif\b|\belif\b|\belse\s+if\b|\bfor\b|\bwhile\b|\bcase\b|\bcatch\b|\bexcept\b"
    r"|&&|\|\||\?\s*[^:\s]+\s*:"
)


def _compile(table: dict[str, list[str]]) -> dict[str, list[re.Pattern[str]]]:
    return {lang: [re.compile(p, re.MULTILINE) for p in pats] for lang, pats in table.items()}


_FUNCTIONS = _compile(_FUNCTION_PATTERNS)
_CLASSES = _compile(_CLASS_PATTERNS)
_VARIABLES = _compile(_VARIABLE_PATTERNS)
_TYPES = _compile(_TYPE_PATTERNS)
_IMPORTS = _compile(_IMPORT_PATTERNS)
_FALLBACK = [re.compile(p, re.MULTILINE) for p in _FALLBACK_FUNCTIONS]


def _find_all(patterns: list[re.Pattern[str]], content: str) -> list[str]:
    """Return first-group matches across *patterns*, de-duplicated, in order of appearance."""
    hits: list[tuple[int, str]] = []
    for pattern in patterns:
        hits.extend((m.start(), m.group(1)) for m in pattern.finditer(content))
    hits.sort()
    return list(dict.fromkeys(name for _, name in hits))


def extract_imports(content: str, language: str) -> list[str]:
    """Return imported module/package names referenced in *content*."""
    return _find_all(_IMPORTS.get(language, []), content)


def estimate_complexity(content: str) -> int:
    """1 + number of decision points (branches, loops, boolean operators)."""
    return 1 + len(_COMPLEXITY_RE.findall(content))


def extract_metadata(content: str, language: str) -> ChunkMetadata:
    """Extract symbol names and a complexity estimate from *content*.

    Args:
        content: Chunk source text.
        language: Language detected for the chunk's file.

    Returns:
        ChunkMetadata; unknown languages only get the generic function patterns.
    """
    functions = _find_all(_FUNCTIONS.get(language, _FALLBACK), content)
    return ChunkMetadata(
        functions=functions,
        classes=_find_all(_CLASSES.get(language, []), content),
        variables=_find_all(_VARIABLES.get(language, []), content)[:_MAX_VARIABLES],
        types=_find_all(_TYPES.get(language, []), content),
        complexity=estimate_complexity(content),
    )
