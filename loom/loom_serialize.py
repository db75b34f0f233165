from __future__ import annotations

import json
import os
import re
from typing import Any, Optional
import collections.abc

import yaml

# TOML: prefer stdlib tomllib (3.11+) for reading; the 'toml' package also writes
try:
    import tomllib as _toml_loader  # type: ignore[attr-defined]
    _HAS_TOMLLIB = True
except ImportError:
    _HAS_TOMLLIB = False
try:
    import toml as _toml
except ImportError:
    _toml = None  # type: ignore[assignment]

import xmltodict


FORMATS = ("json", "yaml", "toml", "xml")

_EXTENSIONS = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".xml": "xml",
}


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        # utf-8-sig drops a leading BOM, common in hand-edited manifests
        return bytes(data).decode(encoding or "utf-8-sig")
    return data


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def _to_builtin(obj: Any) -> Any:
    # xmltodict hands back nested OrderedDicts; flatten to plain containers
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml', 'xml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if 'toml' in ct:
        return 'toml'
    if 'xml' in ct:
        return 'xml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        if s.startswith('<'):
            return 'xml'
    return None


def format_from_path(path: str) -> Optional[str]:
    return _EXTENSIONS.get(os.path.splitext(path)[1].lower())


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Parse manifest/config text into plain Python structures.
    The format comes from `fmt`, then `content_type`, then sniffing; YAML is
    the fallback since it also accepts JSON. Malformed input raises ValueError.
    """
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    f = fmt or detect_format(content_type, text) or 'yaml'
    try:
        if f == 'json':
            return json.loads(text)
        if f == 'yaml':
            return yaml.safe_load(text)
        if f == 'toml':
            if _HAS_TOMLLIB:
                return _toml_loader.loads(text)
            if _toml is None:
                raise RuntimeError("TOML support requires Python 3.11+ (tomllib) or the 'toml' package")
            return _toml.loads(text)
        if f == 'xml':
            return _to_builtin(xmltodict.parse(text))
    except (ValueError, yaml.YAMLError, xmltodict.expat.ExpatError) as e:
        raise ValueError(f"Malformed {f} document: {e}") from e
    raise ValueError(f"Unsupported format: {fmt!r}")


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True,
              xml_root: str = "root") -> str:
    """
    Render plain Python structures as text.
    - fmt: 'json' | 'yaml' | 'toml' | 'xml'
    - For XML, a non-dict value is wrapped under {xml_root: value}
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    if f == 'toml':
        if _toml is None:
            raise RuntimeError("TOML serialization requires the 'toml' package")
        if not isinstance(built, dict):
            built = {xml_root: built}
        return _toml.dumps(built)
    if f == 'xml':
        root = built if isinstance(built, dict) and len(built) == 1 else {xml_root: built}
        return xmltodict.unparse(root, pretty=pretty)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def load_file(path: str) -> Any:
    """Read a json/yaml/toml/xml file, picking the format from its extension."""
    fmt = format_from_path(path)
    if fmt is None:
        raise ValueError(f"Cannot tell the format of {path} from its extension")
    with open(path, "rb") as f:
        return deserialize(f.read(), fmt=fmt)


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "format_from_path",
    "load_file",
]
