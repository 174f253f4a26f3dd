"""Supported languages and a keyword-based language suggestion.

This is intentionally shallow: the request's language only selects a backend
template and the syntax highlighting lexer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class SupportedLanguage:
    name: str
    extensions: Tuple[str, ...]
    lexer: str


SUPPORTED_LANGUAGES: Tuple[SupportedLanguage, ...] = (
    SupportedLanguage("typescript", (".ts", ".tsx"), "typescript"),
    SupportedLanguage("javascript", (".js", ".jsx", ".mjs"), "javascript"),
    SupportedLanguage("python", (".py", ".pyw"), "python"),
    SupportedLanguage("java", (".java",), "java"),
    SupportedLanguage("csharp", (".cs",), "csharp"),
    SupportedLanguage("cpp", (".cpp", ".cc", ".cxx"), "cpp"),
    SupportedLanguage("c", (".c", ".h"), "c"),
    SupportedLanguage("go", (".go",), "go"),
    SupportedLanguage("rust", (".rs",), "rust"),
    SupportedLanguage("swift", (".swift",), "swift"),
    SupportedLanguage("kotlin", (".kt", ".kts"), "kotlin"),
    SupportedLanguage("php", (".php",), "php"),
    SupportedLanguage("ruby", (".rb",), "ruby"),
    SupportedLanguage("html", (".html", ".htm"), "html"),
    SupportedLanguage("css", (".css",), "css"),
    SupportedLanguage("json", (".json",), "json"),
    SupportedLanguage("yaml", (".yml", ".yaml"), "yaml"),
    SupportedLanguage("markdown", (".md",), "markdown"),
    SupportedLanguage("bash", (".sh", ".bash"), "bash"),
    SupportedLanguage("sql", (".sql",), "sql"),
)

_WHITESPACE = re.compile(r"\s+")

# Checked in order; the first hit wins
_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("typescript", ("typescript", "react", "angular", "tsx")),
    ("python", ("python", "django", "flask", "pandas", "pytest")),
    ("javascript", ("javascript", "node.js", "nodejs", "express", "jquery", "npm")),
    ("java", ("java ", "spring", "maven")),
    ("csharp", ("c#", "csharp", ".net", "dotnet")),
    ("cpp", ("c++", "cpp")),
    ("go", ("golang", " go ", "goroutine")),
    ("rust", ("rust", "cargo")),
    ("swift", ("swift", "swiftui", "ios")),
    ("kotlin", ("kotlin", "android")),
    ("php", ("php", "laravel")),
    ("ruby", ("ruby", "rails")),
    ("sql", ("sql", "query", "database table")),
    ("bash", ("bash", "shell script", "shell")),
    ("html", ("html", "web page")),
    ("css", ("css", "stylesheet")),
)


def get_supported_languages() -> List[SupportedLanguage]:
    return list(SUPPORTED_LANGUAGES)


def find_language(name: str) -> Optional[SupportedLanguage]:
    lowered = (name or "").strip().lower()
    for lang in SUPPORTED_LANGUAGES:
        if lang.name == lowered:
            return lang
    return None


def suggest_language(prompt: str, default: str = "python") -> str:
    haystack = " " + _WHITESPACE.sub(" ", prompt.lower()) + " "
    for language, keywords in _KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return language
    return default
