"""
Format compiler and named format registry.

A format is an ordered list of token specifiers:

    [":remote-addr", ":method", ":url", ":response[content-length]"]

``compile_format`` turns it into a renderer that produces one flat record
per exchange:

    {"remote_addr": "10.0.0.7", "method": "GET", "url": "/",
     "response_content_length": "12"}

Field names are the token name with hyphens turned into underscores, plus
``_<argument>`` when an argument is given. Key order follows the specifier
order. A missing value renders as ``"-"``.

All parsing happens at compile time; rendering walks a precomputed entry
list and dispatches to the token registry. Token names are only resolved
at render time, so a token may be registered after a format using it has
been compiled, as long as it exists before the first request. A format
naming a token that never gets registered fails on its first render.
"""

import logging
import re
from collections.abc import Callable, Iterable, Iterator, Sequence
from enum import StrEnum
from typing import Any, NamedTuple

from request_logger.capture import RequestView, ResponseView
from request_logger.core.exceptions import MalformedSpecifierError
from request_logger.tokens import TokenRegistry

logger = logging.getLogger(__name__)

Record = dict[str, str]
Renderer = Callable[[TokenRegistry, RequestView, ResponseView], Record | None]
FormatSpec = Sequence[str] | Renderer

SPECIFIER_PATTERN = re.compile(r":([-\w]{2,})(?:\[([^\]]+)\])?")

MISSING = "-"


def normalize_field_name(name: str, argument: str | None = None) -> str:
    field_name = name.replace("-", "_")
    if argument:
        field_name += "_" + argument.replace("-", "_")
    return field_name


# ─── Compiler ─────────────────────────────────────────────────


class EntryKind(StrEnum):
    TOKEN = "token"
    LITERAL = "literal"
    MALFORMED = "malformed"


class FormatEntry(NamedTuple):
    kind: EntryKind
    field: str
    token: str | None = None
    argument: Any = None


def parse_specifier(specifier: Any) -> FormatEntry:
    """Classify one format entry: token specifier, literal text, or malformed."""
    if not isinstance(specifier, str) or not specifier:
        return FormatEntry(EntryKind.MALFORMED, "", argument=specifier)

    match = SPECIFIER_PATTERN.fullmatch(specifier)
    if match is None:
        return FormatEntry(
            EntryKind.LITERAL, normalize_field_name(specifier), argument=specifier
        )

    name, argument = match.groups()
    return FormatEntry(
        EntryKind.TOKEN, normalize_field_name(name, argument), name, argument
    )


class CompiledFormat:
    """A renderer built from a specifier list. Call it with
    ``(tokens, request, response)`` to get a record."""

    __slots__ = ("specifiers", "entries")

    def __init__(self, specifiers: Iterable[Any]):
        self.specifiers = tuple(specifiers)
        self.entries = tuple(parse_specifier(s) for s in self.specifiers)

    @property
    def fields(self) -> list[str]:
        return [entry.field for entry in self.entries]

    def __call__(
        self,
        tokens: TokenRegistry,
        request: RequestView,
        response: ResponseView,
    ) -> Record:
        record: Record = {}
        for kind, field_name, name, argument in self.entries:
            if kind is EntryKind.TOKEN:
                value = tokens[name](request, response, argument)
                record[field_name] = str(value) if value else MISSING
            elif kind is EntryKind.LITERAL:
                record[field_name] = argument
            else:
                raise MalformedSpecifierError(argument)
        return record

    def __repr__(self) -> str:
        return f"CompiledFormat({list(self.specifiers)!r})"


def compile_format(specifiers: Iterable[Any]) -> CompiledFormat:
    """Compile an ordered specifier list into a reusable renderer."""
    compiled = CompiledFormat(specifiers)
    logger.debug("Compiled format with fields %s", compiled.fields)
    return compiled


# ─── Named Formats ────────────────────────────────────────────


class FormatRegistry:
    """
    Formats stored under short names.

    A named format is either a specifier list (compiled on first use, then
    cached) or a renderer callable used as-is.
    """

    def __init__(self) -> None:
        self._formats: dict[str, FormatSpec] = {}
        self._compiled: dict[str, CompiledFormat] = {}

    def define(self, name: str, fmt: FormatSpec) -> "FormatRegistry":
        if not callable(fmt):
            fmt = tuple(fmt)
        self._formats[name] = fmt
        self._compiled.pop(name, None)
        return self

    def get(self, name: str) -> FormatSpec | None:
        return self._formats.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._formats

    def __iter__(self) -> Iterator[str]:
        return iter(self._formats)

    def _named(self, name: str) -> Renderer:
        fmt = self._formats[name]
        if callable(fmt):
            return fmt
        if name not in self._compiled:
            self._compiled[name] = compile_format(fmt)
        return self._compiled[name]

    def resolve(self, fmt: str | FormatSpec | None = None) -> Renderer:
        """
        Turn a ``format`` option into a renderer.

        Args:
            fmt: A renderer callable (used directly), a specifier list
                 (compiled), the name of a registered format, or a
                 whitespace-separated specifier string such as
                 ``":method :url :status"``. ``None`` or ``""`` selects
                 ``"default"``.

        Returns:
            A renderer ``(tokens, request, response) -> record | None``.
        """
        if not fmt:
            return self._named("default")
        if callable(fmt):
            return fmt
        if isinstance(fmt, str):
            if fmt in self._formats:
                return self._named(fmt)
            return compile_format(fmt.split())
        return compile_format(fmt)


formats = FormatRegistry()


def define_format(name: str, fmt: FormatSpec) -> FormatRegistry:
    """Register a named format on the process-wide registry."""
    return formats.define(name, fmt)


define_format(
    "default",
    [
        ":remote-addr",
        ":date",
        ":method",
        ":url",
        ":http-version",
        ":status",
        ":response[content-length]",
        ":referrer",
        ":user-agent",
        ":response-time",
    ],
)

define_format(
    "short",
    [
        ":remote-addr",
        ":method",
        ":url",
        ":http-version",
        ":status",
        ":response[content-length]",
        ":response-time",
    ],
)

define_format(
    "tiny",
    [":method", ":url", ":status", ":response[content-length]", ":response-time"],
)
