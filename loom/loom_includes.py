from __future__ import annotations
import logging
import os
import re
from typing import Dict, List, Optional, Tuple

from loom.loom_datatypes import MissingIncludedFile, ScriptFile, ScriptGraph

logger = logging.getLogger(__name__)

LOAD_MARKER = "#load"
REFERENCE_MARKER = "#r"
PACKAGE_SCHEME = "pkg:"

_directive_patterns: Dict[str, re.Pattern] = {}


def _directive_pattern(marker: str) -> re.Pattern:
    pattern = _directive_patterns.get(marker)
    if pattern is None:
        # marker at line start, then a double-quoted literal; surrounding blanks inside the quotes are trimmed
        pattern = re.compile(
            r'^[ \t]*' + re.escape(marker) + r'(?![\w-])[ \t]*"[ \t]*([^"\r\n]*?)[ \t]*"',
            re.MULTILINE,
        )
        _directive_patterns[marker] = pattern
    return pattern


def parse_directives(text: str, marker: str = LOAD_MARKER) -> List[str]:
    """Return the quoted literals of every `marker "..."` line, in declaration order."""
    return [m.group(1) for m in _directive_pattern(marker).finditer(text) if m.group(1)]


def is_package_reference(literal: str) -> bool:
    return literal[:len(PACKAGE_SCHEME)].lower() == PACKAGE_SCHEME


def package_name(literal: str) -> str:
    # 'pkg:Name' or 'pkg:Name, 1.2' -> 'Name'
    rest = literal[len(PACKAGE_SCHEME):]
    return rest.split(",", 1)[0].strip()


def resolve_include(literal: str, base_dir: str) -> str:
    # Absolute literal: used as written
    if os.path.isabs(literal):
        return os.path.normpath(literal)
    # Default: relative to the declaring file's directory
    return os.path.normpath(os.path.join(base_dir, literal))


class IncludeGraphResolver:
    """Walks `#load` directives from a root script.

    Files are visited depth-first in declaration order and recorded before
    their children, so the root always comes first. Every file is read at
    most once; cycles and diamonds simply stop at the visited check.
    """

    def __init__(self, encoding: str = "utf-8-sig", marker: str = LOAD_MARKER):
        self.encoding = encoding
        self.marker = marker

    def read_script(self, path: str) -> ScriptFile:
        with open(path, "r", encoding=self.encoding) as f:
            text = f.read()
        return ScriptFile(path=path, text=text, directives=tuple(parse_directives(text, self.marker)))

    def load(self, path: str, referenced_from: Optional[str] = None) -> ScriptFile:
        """Read one script, raising MissingIncludedFile when it does not exist."""
        if not os.path.isfile(path):
            raise MissingIncludedFile(path, referenced_from)
        return self.read_script(path)

    def build_graph(self, root_path: str) -> ScriptGraph:
        root = os.path.abspath(root_path)
        visited: set[str] = set()
        files: List[ScriptFile] = []
        stack: List[Tuple[str, Optional[str]]] = [(root, None)]
        while stack:
            path, referenced_from = stack.pop()
            key = os.path.normcase(path)
            if key in visited:
                continue
            script = self.load(path, referenced_from)
            visited.add(key)
            files.append(script)

            base_dir = os.path.dirname(path)
            children = [
                resolve_include(literal, base_dir)
                for literal in script.directives
                if not is_package_reference(literal)
            ]
            # Reversed so the first declared directive is popped first
            for child in reversed(children):
                if os.path.normcase(child) not in visited:
                    stack.append((child, path))

        logger.debug("Resolved %d script file(s) from %s", len(files), root)
        return ScriptGraph(root=files[0], files=tuple(files))

    def resolve(self, root_path: str) -> List[str]:
        return self.build_graph(root_path).paths


def resolve_script_files(root_path: str, encoding: str = "utf-8-sig") -> List[str]:
    """Ordered absolute paths of the root script and everything it loads."""
    return IncludeGraphResolver(encoding=encoding).resolve(root_path)


def build_script_graph(root_path: str, encoding: str = "utf-8-sig") -> ScriptGraph:
    return IncludeGraphResolver(encoding=encoding).build_graph(root_path)
