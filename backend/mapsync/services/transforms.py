"""
Built-in pipes and $func functions for mapping expressions.

Pipes receive the running value first (``value | name:arg``); functions receive
their evaluated arguments (``$func.name(a, b)``). Both are looked up by name in a
TransformRegistry, so callers may register project specific transforms.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable

from mapsync.core.errors import ExpressionError


SCALAR_TYPES = (str, int, float, bool, Decimal, date, datetime, time)

_TRUTHY = {'1', 'true', 'yes', 'ja', 'y'}
_SLUG_REPLACEMENTS = {'&': ' und ', 'ä': 'ae', 'ö': 'oe', 'ü': 'ue', 'ß': 'ss'}
_RTF_SKIP_GROUPS = {'fonttbl', 'colortbl', 'stylesheet', 'info', 'header', 'footer', 'generator', 'pict'}
_RTF_SYMBOLS = {
    '\\~': ' ',
    '\\_': '-',
    '\\emdash': '\u2014',
    '\\endash': '\u2013',
    '\\lquote': '\u2018',
    '\\rquote': '\u2019',
    '\\ldblquote': '\u201c',
    '\\rdblquote': '\u201d',
    '\\bullet': '\u2022',
}
_HTML_TAG_RE = re.compile(r'<[^>]*>')
_RTF_CONTROL_RE = re.compile(r'\\[a-zA-Z]+-?\d* ?')


def is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, SCALAR_TYPES)


def as_text(value: Any) -> str:
    """Stringify a scalar the way concatenation expects it (null -> '', True -> '1')."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def _is_blank(value: Any) -> bool:
    return value is None or value == ''


# --- pipes -----------------------------------------------------------------

def trim(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def null_if_empty(value: Any) -> Any:
    if value is None or not is_scalar(value):
        return value
    return None if as_text(value).strip() == '' else value


def basename(value: Any) -> Any:
    if _is_blank(value):
        return value
    text = str(value).replace('\\', '/').rstrip('/')
    return text.rsplit('/', 1)[-1]


def normalize_title(value: Any) -> str:
    text = as_text(value).strip()
    if not text:
        return ''
    text = text.replace('\\', '/')
    while '//' in text:
        text = text.replace('//', '/')
    return basename(text)


def default(value: Any, fallback: Callable[[], Any]) -> Any:
    return fallback() if _is_blank(value) else value


def to_decimal(value: Any) -> float | None:
    """
    Parse a number written with either decimal separator.
    "19,99" -> 19.99, "1.234,56" -> 1234.56, "1,234.56" -> 1234.56, "1.234.567" -> 1234567.0
    """
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    text = re.sub(r"[\s\u00a0']", '', str(value))
    if not text:
        return None
    has_comma = ',' in text
    has_dot = '.' in text
    if has_comma and has_dot:
        if text.rfind(',') > text.rfind('.'):
            text = text.replace('.', '').replace(',', '.')
        else:
            text = text.replace(',', '')
    elif has_comma:
        text = text.replace(',', '.') if text.count(',') == 1 else text.replace(',', '')
    elif has_dot and text.count('.') > 1:
        text = text.replace('.', '')
    try:
        return float(text)
    except ValueError:
        return None


def to_int(value: Any) -> int | None:
    if _is_blank(value):
        return None
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, (float, Decimal)):
        return int(value)
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        parsed = to_decimal(text)
        return int(parsed) if parsed is not None else None


def bool_to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float, Decimal)):
        return 1 if int(value) == 1 else 0
    if isinstance(value, str):
        return 1 if value.strip().lower() in _TRUTHY else 0
    return 0


def lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def slugify(value: Any) -> str:
    text = as_text(value).strip().lower()
    if not text:
        return ''
    for search, replacement in _SLUG_REPLACEMENTS.items():
        text = text.replace(search, replacement)
    text = unicodedata.normalize('NFKD', text).encode('ascii', 'ignore').decode('ascii').lower()
    text = re.sub(r'[^a-z0-9]+', '-', text)
    return re.sub(r'-+', '-', text).strip('-')


def remove_html(value: Any) -> Any:
    if _is_blank(value):
        return value
    text = str(value)
    if '{\\rtf' in text:
        text = _RTF_CONTROL_RE.sub(' ', text)
        for char in '{}\\':
            text = text.replace(char, '')
        text = re.sub(r'\s+', ' ', text).strip()
    return _HTML_TAG_RE.sub('', text)


def rtf_to_html(value: Any) -> Any:
    if value is None:
        return None
    text = as_text(value).strip()
    if not text:
        return ''
    if '{\\rtf' not in text:
        return _finalize_rtf_text(text)

    match = re.search(r'\\ansicpg(\d+)', text, re.IGNORECASE)
    encoding = f'cp{match.group(1)}' if match else 'cp1252'
    text = _remove_rtf_groups(text)
    for search, replacement in _RTF_SYMBOLS.items():
        text = text.replace(search, replacement)
    text = _decode_rtf_escapes(text, encoding)
    text = re.sub(r'\\par[d]?', '\n', text)
    text = text.replace('\\line', '\n').replace('\\tab', '\t')
    text = _RTF_CONTROL_RE.sub(' ', text)
    text = text.replace('\\{', '{').replace('\\}', '}')
    for char in '{}\\':
        text = text.replace(char, '')
    return _finalize_rtf_text(text)


def round_to(value: Any, digits: Any = 0) -> float | None:
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return round(number, int(digits or 0))


def _remove_rtf_groups(text: str) -> str:
    out: list[str] = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char == '{' and i + 1 < length and text[i + 1] == '\\':
            j = i + 2
            skip = j < length and text[j] == '*'
            if not skip:
                k = j
                while k < length and text[k].isalpha():
                    k += 1
                skip = text[j:k].lower() in _RTF_SKIP_GROUPS
            if skip:
                depth = 1
                k = i + 1
                while k < length and depth:
                    if text[k] == '{':
                        depth += 1
                    elif text[k] == '}':
                        depth -= 1
                    k += 1
                i = k
                continue
        out.append(char)
        i += 1
    return ''.join(out)


def _decode_rtf_escapes(text: str, encoding: str) -> str:
    text = re.sub(r'\\uc\d+', '', text)

    def _hex(match: re.Match) -> str:
        raw = bytes([int(match.group(1), 16)])
        try:
            return raw.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            return raw.decode('cp1252', errors='ignore')

    def _unicode(match: re.Match) -> str:
        code = int(match.group(1))
        if code < 0:
            code += 65536
        return chr(code) if code else ''

    text = re.sub(r"\\'([0-9a-fA-F]{2})", _hex, text)
    return re.sub(r'\\u(-?\d+)\??', _unicode, text)


def _finalize_rtf_text(text: str) -> str:
    text = re.sub(r'\r\n?', '\n', text)
    text = re.sub(r'[ \t]+\n', '\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    text = re.sub(r'[ \t]{2,}', ' ', text)
    text = re.sub(r'^\s*[\w\s\-,.]+;', '', text).strip()
    lines = [line.strip() for line in text.split('\n') if line.strip()]
    return '<br>'.join(lines)


# --- functions ---------------------------------------------------------------

def concat(*args: Any) -> str:
    return ''.join(as_text(a) for a in args)


def coalesce(*args: Any) -> Any:
    for value in args:
        if not _is_blank(value):
            return value
    return None


def join(separator: Any, *args: Any) -> str:
    return as_text(separator).join(as_text(a) for a in args if not _is_blank(a))


def replace(value: Any, search: Any, replacement: Any = '') -> Any:
    if value is None:
        return None
    needle = as_text(search)
    if not needle:
        return as_text(value)
    return as_text(value).replace(needle, as_text(replacement))


def substr(value: Any, start: Any, length: Any = None) -> Any:
    if value is None:
        return None
    text = as_text(value)
    offset = int(start)
    if length is None:
        return text[offset:]
    size = int(length)
    if size < 0:
        # negative length drops characters from the end
        return text[offset:size]
    begin = offset if offset >= 0 else max(len(text) + offset, 0)
    return text[begin:begin + size]


# --- registry ------------------------------------------------------------------

@dataclass(frozen=True)
class PipeSpec:
    name: str
    func: Callable[..., Any]
    min_args: int = 0
    max_args: int = 0
    lazy: bool = False


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    func: Callable[..., Any]
    min_args: int = 0
    max_args: int | None = None


class TransformRegistry:
    def __init__(self) -> None:
        self._pipes: dict[str, PipeSpec] = {}
        self._functions: dict[str, FunctionSpec] = {}

    def register_pipe(
        self,
        name: str,
        func: Callable[..., Any],
        *,
        min_args: int = 0,
        max_args: int = 0,
        lazy: bool = False,
    ) -> None:
        """
        Register a pipe. Lazy pipes receive a zero-argument callable instead of the
        evaluated argument, so the argument is only evaluated when the pipe needs it.
        """
        if lazy and max_args != 1:
            raise ValueError('lazy pipes take exactly one argument')
        key = name.strip().lower()
        self._pipes[key] = PipeSpec(key, func, min_args, max_args, lazy)

    def register_function(
        self,
        name: str,
        func: Callable[..., Any],
        *,
        min_args: int = 0,
        max_args: int | None = None,
    ) -> None:
        key = name.strip().lower()
        self._functions[key] = FunctionSpec(key, func, min_args, max_args)

    def pipe(self, name: str) -> PipeSpec:
        spec = self._pipes.get(str(name or '').strip().lower())
        if spec is None:
            raise ExpressionError(f'unknown pipe {name!r}')
        return spec

    def function(self, name: str) -> FunctionSpec:
        spec = self._functions.get(str(name or '').strip().lower())
        if spec is None:
            raise ExpressionError(f'unknown function $func.{name}')
        return spec

    def pipe_names(self) -> list[str]:
        return sorted(self._pipes)

    def function_names(self) -> list[str]:
        return sorted(self._functions)


def default_registry() -> TransformRegistry:
    registry = TransformRegistry()
    for name, func in (
        ('trim', trim),
        ('null_if_empty', null_if_empty),
        ('basename', basename),
        ('normalize_title', normalize_title),
        ('to_decimal', to_decimal),
        ('to_int', to_int),
        ('bool_to_int', bool_to_int),
        ('lower', lower),
        ('upper', upper),
        ('slugify', slugify),
        ('remove_html', remove_html),
        ('rtf_to_html', rtf_to_html),
    ):
        registry.register_pipe(name, func)
    registry.register_pipe('default', default, min_args=1, max_args=1, lazy=True)
    registry.register_pipe('round', round_to, min_args=0, max_args=1)

    registry.register_function('concat', concat, min_args=1)
    registry.register_function('coalesce', coalesce, min_args=1)
    registry.register_function('join', join, min_args=2)
    registry.register_function('replace', replace, min_args=2, max_args=3)
    registry.register_function('substr', substr, min_args=2, max_args=3)
    return registry
