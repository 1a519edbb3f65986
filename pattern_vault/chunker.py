"""
Structural chunker: splits a source file into definition-sized pieces.

Uses tree-sitter (>= 0.22 API, one grammar package per language) to find
top-level definitions.  Languages without a grammar, or grammars that fail
to load, fall back to a keyword regex.

Heuristics
----------
- files shorter than 5 lines produce no chunks;
- files of up to 50 lines are one chunk;
- larger files are cut at each definition start; a piece runs until the
  next definition and is kept only if it spans more than 3 lines;
- when no definition is found the whole file is one chunk.
"""

from __future__ import annotations

import importlib
import logging
import os
import re
from typing import Optional

import tree_sitter as ts

from .models import Chunk

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_FILE_LINES = 5
SMALL_FILE_LINES = 50
MIN_CHUNK_LINES = 4

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "c_sharp",
}

# language -> (grammar module, attribute returning the language pointer)
_GRAMMARS: dict[str, tuple[str, str]] = {
    "python": ("tree_sitter_python", "language"),
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
    "java": ("tree_sitter_java", "language"),
    "c": ("tree_sitter_c", "language"),
    "cpp": ("tree_sitter_cpp", "language"),
    "go": ("tree_sitter_go", "language"),
    "rust": ("tree_sitter_rust", "language"),
    "ruby": ("tree_sitter_ruby", "language"),
    "php": ("tree_sitter_php", "language_php"),
    "c_sharp": ("tree_sitter_c_sharp", "language"),
}

_JS_DEFINITIONS = {
    "function_declaration", "generator_function_declaration",
    "class_declaration", "lexical_declaration", "variable_declaration",
    "export_statement",
}

_DEFINITION_TYPES: dict[str, set[str]] = {
    "python": {"function_definition", "class_definition", "decorated_definition"},
    "javascript": _JS_DEFINITIONS,
    "typescript": _JS_DEFINITIONS | {
        "interface_declaration", "type_alias_declaration", "enum_declaration",
        "abstract_class_declaration",
    },
    "java": {"class_declaration", "interface_declaration", "enum_declaration",
             "record_declaration", "method_declaration", "constructor_declaration"},
    "c": {"function_definition", "struct_specifier"},
    "cpp": {"function_definition", "class_specifier", "struct_specifier",
            "namespace_definition", "template_declaration"},
    "go": {"function_declaration", "method_declaration", "type_declaration"},
    "rust": {"function_item", "impl_item", "struct_item", "enum_item",
             "trait_item", "mod_item"},
    "ruby": {"method", "class", "module", "singleton_method"},
    "php": {"function_definition", "class_declaration", "interface_declaration",
            "trait_declaration", "method_declaration"},
    "c_sharp": {"class_declaration", "interface_declaration", "struct_declaration",
                "enum_declaration", "record_declaration", "method_declaration",
                "constructor_declaration"},
}
_DEFINITION_TYPES["tsx"] = _DEFINITION_TYPES["typescript"]

# Node types whose body holds the definitions worth splitting on when the
# file is a single wrapper (a Java class, a C# namespace, ...).
_CONTAINER_BODIES = {
    "class_body", "declaration_list", "interface_body", "enum_body",
    "body_statement", "block", "compound_statement",
}

# Language-agnostic definition keywords, used when no grammar applies.
_DEFINITION_RE = re.compile(
    r"((?:async\s+)?(?:function|class|const|let|var|def|public|private|protected)"
    r"\s+[\w\d_]+)"
)


def detect_language(file_path: str) -> Optional[str]:
    """Return the chunker language name for *file_path*, or None."""
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_TO_LANGUAGE.get(ext)


def _line_of(text: str, index: int) -> int:
    return text.count("\n", 0, index)


# ---------------------------------------------------------------------------
# StructuralChunker
# ---------------------------------------------------------------------------

class StructuralChunker:
    """Splits file content into :class:`~pattern_vault.models.Chunk` objects."""

    def __init__(self) -> None:
        self._parsers: dict[str, Optional[ts.Parser]] = {}

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------

    def _get_parser(self, language: str) -> Optional[ts.Parser]:
        if language in self._parsers:
            return self._parsers[language]
        parser = None
        grammar = _GRAMMARS.get(language)
        if grammar is not None:
            module_name, attr = grammar
            try:
                module = importlib.import_module(module_name)
                parser = ts.Parser(ts.Language(getattr(module, attr)()))
            except ImportError:
                logger.info("[Chunker] %s not installed, using keyword split for %s",
                            module_name, language)
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("[Chunker] Cannot load tree-sitter grammar for %s: %s",
                               language, exc)
        self._parsers[language] = parser
        return parser

    # ------------------------------------------------------------------
    # Definition starts
    # ------------------------------------------------------------------

    def _tree_starts(self, content: str, language: str) -> Optional[list[int]]:
        """Character offsets of top-level definitions, or None without a parser."""
        parser = self._get_parser(language)
        if parser is None:
            return None
        source = content.encode("utf-8")
        tree = parser.parse(source)
        wanted = _DEFINITION_TYPES.get(language, set())

        nodes = [n for n in tree.root_node.named_children if n.type in wanted]
        if len(nodes) == 1:
            inner = self._inner_definitions(nodes[0], wanted)
            if len(inner) > 1:
                nodes = inner

        # tree-sitter reports byte offsets; convert to str offsets
        return [len(source[:n.start_byte].decode("utf-8", errors="replace"))
                for n in nodes]

    @staticmethod
    def _inner_definitions(node, wanted: set[str]) -> list:
        for child in node.named_children:
            if child.type in _CONTAINER_BODIES:
                return [c for c in child.named_children if c.type in wanted]
        return []

    @staticmethod
    def _regex_starts(content: str) -> list[int]:
        return [m.start() for m in _DEFINITION_RE.finditer(content)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def split(self, content: str, file_path: str) -> list[Chunk]:
        """Split *content* of *file_path* into chunks.

        Parameters
        ----------
        content:
            Full text of the file.
        file_path:
            Path used for the language tag and chunk metadata.

        Returns
        -------
        list[Chunk]
            Possibly empty; line numbers are 0-based, end exclusive.
        """
        line_count = len(content.split("\n"))
        if line_count < MIN_FILE_LINES:
            return []

        language = detect_language(file_path)
        tag = language or os.path.splitext(file_path)[1].lstrip(".")
        project_path = os.path.dirname(file_path)

        def _whole_file() -> list[Chunk]:
            return [Chunk(content=content, language=tag, file_path=file_path,
                          start_line=0, end_line=line_count,
                          project_path=project_path)]

        if line_count <= SMALL_FILE_LINES:
            return _whole_file()

        starts = self._tree_starts(content, language) if language else None
        if starts is None:
            starts = self._regex_starts(content)
        if not starts:
            return _whole_file()

        chunks: list[Chunk] = []
        for i, start in enumerate(starts):
            end = starts[i + 1] if i + 1 < len(starts) else len(content)
            piece = content[start:end].strip()
            if len(piece.split("\n")) < MIN_CHUNK_LINES:
                continue
            chunks.append(Chunk(
                content=piece,
                language=tag,
                file_path=file_path,
                start_line=_line_of(content, start),
                end_line=_line_of(content, end),
                project_path=project_path,
            ))
        logger.debug("[Chunker] %s: %d chunk(s) from %d definition(s)",
                     file_path, len(chunks), len(starts))
        return chunks
