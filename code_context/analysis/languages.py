# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""File classification: extension -> chunking strategy."""

from __future__ import annotations

import posixpath
from enum import Enum
from typing import NamedTuple


class ChunkStrategy(str, Enum):
    CODE = "code"
    TEXT = "text"
    SQL = "sql"
    IGNORE = "ignore"


class Classification(NamedTuple):
    strategy: ChunkStrategy
    language: str


# Separator lists per language, most structural first. Each list ends with the
# empty separator so the splitter can always fall back to characters.
SEPARATORS: dict[str, list[str]] = {
    "cpp": [
        "\nclass ", "\nvoid ", "\nint ", "\nfloat ", "\ndouble ",
        "\nif ", "\nfor ", "\nwhile ", "\nswitch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "go": [
        "\nfunc ", "\nvar ", "\nconst ", "\ntype ",
        "\nif ", "\nfor ", "\nswitch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "java": [
        "\nclass ", "\npublic ", "\nprotected ", "\nprivate ", "\nstatic ",
        "\nif ", "\nfor ", "\nwhile ", "\nswitch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "js": [
        "\nfunction ", "\nconst ", "\nlet ", "\nvar ", "\nclass ",
        "\nif ", "\nfor ", "\nwhile ", "\nswitch ", "\ncase ", "\ndefault ",
        "\n\n", "\n", " ", "",
    ],
    "php": [
        "\nfunction ", "\nclass ",
        "\nif ", "\nforeach ", "\nwhile ", "\ndo ", "\nswitch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "proto": [
        "\nmessage ", "\nservice ", "\nenum ", "\noption ", "\nimport ", "\nsyntax ",
        "\n\n", "\n", " ", "",
    ],
    "python": ["\nclass ", "\ndef ", "\n\tdef ", "\n\n", "\n", " ", ""],
    "rst": ["\n===\n", "\n---\n", "\n***\n", "\n.. ", "\n\n", "\n", " ", ""],
    "ruby": [
        "\ndef ", "\nclass ",
        "\nif ", "\nunless ", "\nwhile ", "\nfor ", "\ndo ", "\nbegin ", "\nrescue ",
        "\n\n", "\n", " ", "",
    ],
    "rust": [
        "\nfn ", "\nconst ", "\nlet ",
        "\nif ", "\nwhile ", "\nfor ", "\nloop ", "\nmatch ",
        "\n\n", "\n", " ", "",
    ],
    "scala": [
        "\nclass ", "\nobject ", "\ndef ", "\nval ", "\nvar ",
        "\nif ", "\nfor ", "\nwhile ", "\nmatch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "swift": [
        "\nfunc ", "\nclass ", "\nstruct ", "\nenum ",
        "\nif ", "\nfor ", "\nwhile ", "\ndo ", "\nswitch ", "\ncase ",
        "\n\n", "\n", " ", "",
    ],
    "markdown": [
        "\n## ", "\n### ", "\n#### ", "\n##### ", "\n###### ",
        "```\n\n", "\n\n***\n\n", "\n\n---\n\n", "\n\n___\n\n",
        "\n\n", "\n", " ", "",
    ],
    "latex": [
        "\n\\chapter{", "\n\\section{", "\n\\subsection{", "\n\\subsubsection{",
        "\n\\begin{enumerate}", "\n\\begin{itemize}", "\n\\begin{description}",
        "\n\\begin{list}", "\n\\begin{quote}", "\n\\begin{quotation}",
        "\n\\begin{verse}", "\n\\begin{verbatim}", "\n\\begin{align}",
        "$$", "$",
        "\n\n", "\n", " ", "",
    ],
    "html": [
        "<body", "<div", "<p", "<br", "<li",
        "<h1", "<h2", "<h3", "<h4", "<h5", "<h6",
        "<span", "<table", "<tr", "<td", "<th", "<ul", "<ol",
        "<header", "<footer", "<nav", "<head", "<style", "<script", "<meta", "<title",
        "\n\n", "\n", " ", "",
    ],
    "sol": [
        "\npragma ", "\nusing ", "\ncontract ", "\ninterface ", "\nlibrary ",
        "\nconstructor ", "\ntype ", "\nfunction ", "\nevent ", "\nmodifier ",
        "\nerror ", "\nstruct ", "\nenum ",
        "\nif ", "\nfor ", "\nwhile ", "\ndo while ", "\nassembly ",
        "\n\n", "\n", " ", "",
    ],
    "text": ["\n\n", "\n", " ", ""],
}

_CODE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "cpp": ("c++", "cpp", "c", "h", "hpp", "m", "mm"),
    "go": ("go",),
    "java": ("java",),
    "js": ("js", "ts", "typescript", "tsx", "jsx", "javascript", "json", "pbxproj"),
    "php": ("php",),
    "proto": ("proto",),
    "python": ("py", "python"),
    "rst": ("rst",),
    "ruby": ("rb", "ruby"),
    "rust": ("rs", "rust"),
    "scala": ("scala",),
    "swift": ("swift",),
    "markdown": ("md", "markdown"),
    "latex": ("tex", "latex"),
    "html": (
        "html", "htm", "xml", "xsl", "xdt", "xcworkspacedata", "xcprivacy",
        "xcsettings", "xcscheme", "jpr", "jws", "iml",
    ),
    "sol": ("sol", "solidity"),
}

TEXT_EXTENSIONS = (
    "yaml", "yml", "toml", "ini", "cfg", "conf", "props", "env", "plist",
    "gemfile", "dockerfile", "podfile", "patch", "sh", "bash", "zsh", "fish",
    "bat", "cmd", "properties", "xsd", "text", "txt", "lst", "reg",
)

SQL_EXTENSIONS = ("sql",)

IGNORED_EXTENSIONS = (
    "lock", "jpg", "jpeg", "png", "gif", "bmp", "svg", "ico", "webp", "tiff",
    "bin", "exe", "dll", "so", "dylib", "obj", "o", "zip", "tar", "gz", "rar",
    "7z", "jar", "war", "ear", "class",
)

EXTENSION_STRATEGIES: dict[str, Classification] = {}
for _language, _exts in _CODE_EXTENSIONS.items():
    for _ext in _exts:
        EXTENSION_STRATEGIES[_ext] = Classification(ChunkStrategy.CODE, _language)
for _ext in TEXT_EXTENSIONS:
    EXTENSION_STRATEGIES[_ext] = Classification(ChunkStrategy.TEXT, "text")
for _ext in SQL_EXTENSIONS:
    EXTENSION_STRATEGIES[_ext] = Classification(ChunkStrategy.SQL, "sql")
for _ext in IGNORED_EXTENSIONS:
    EXTENSION_STRATEGIES[_ext] = Classification(ChunkStrategy.IGNORE, "binary")

DEFAULT_CLASSIFICATION = Classification(ChunkStrategy.TEXT, "text")


def file_extension(path: str) -> str:
    """Lower-cased text after the last dot of the file name, or the whole name."""
    name = posixpath.basename(path.replace("\\", "/"))
    return name.rsplit(".", 1)[-1].lower()


def classify_path(path: str) -> Classification:
    """Pick the chunking strategy for a repository-relative path."""
    return EXTENSION_STRATEGIES.get(file_extension(path), DEFAULT_CLASSIFICATION)


def separators_for(language: str) -> list[str]:
    return SEPARATORS.get(language, SEPARATORS["text"])
