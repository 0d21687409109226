"""Line-level block detection and the per-line context state machine"""

import re
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional


RE_FENCE_START = re.compile(r'^(\s*)(`{3,}|~{3,})')
RE_MATH_FENCE = re.compile(r'^\s{0,3}\$\$')
RE_EMPTY_LINE = re.compile(r'^\s*$')
RE_HEADING = re.compile(r'^#{1,6}\s')
RE_THEMATIC_BREAK = re.compile(r'^(\*{3,}|-{3,}|_{3,})\s*$')
RE_LIST_MARKER = re.compile(r'^(\s*)([-*+]|\d{1,9}[.)])(.*)')
RE_ORDERED_MARKER = re.compile(r'^\d{1,9}[.)]')
RE_BLOCKQUOTE = re.compile(r'^\s{0,3}>')
RE_FOOTNOTE_DEFINITION = re.compile(r'^\[\^([^\]]+)\]:\s')
RE_FOOTNOTE_CONTINUATION = re.compile(r'^(?:    |\t)')
RE_INDENT = re.compile(r'^(\s*)')
RE_INTERRUPTING_ITEM = re.compile(r'^\s{0,3}(?:[-*+]|1[.)])[ \t]+\S')

# HTML blocks that run through blank lines until an end marker, as (start, end) pairs
HTML_BLOCK_KINDS = (
    (re.compile(r'^\s{0,3}<(?:script|pre|style|textarea)(?:\s|>|$)', re.I),
     re.compile(r'</(?:script|pre|style|textarea)>', re.I)),
    (re.compile(r'^\s{0,3}<!--'), re.compile(r'-->')),
    (re.compile(r'^\s{0,3}<\?'), re.compile(r'\?>')),
    (re.compile(r'^\s{0,3}<![A-Za-z]'), re.compile(r'>')),
    (re.compile(r'^\s{0,3}<!\[CDATA\['), re.compile(r'\]\]>')),
)


@dataclass(frozen=True)
class ContainerConfig:
    """Container directive syntax as seen by the line scanner."""
    marker: str = ":"
    min_marker_length: int = 3
    allowed_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContainerMatch:
    name: str
    marker_length: int
    is_end: bool


@dataclass(frozen=True)
class ListItemMatch:
    ordered: bool
    indent: int


@dataclass(frozen=True)
class BlockContext:
    """What the scanner knows about open constructs after a given line."""
    in_fenced_code: bool = False
    fence_char: Optional[str] = None
    fence_length: int = 0
    in_container: bool = False
    container_depth: int = 0
    container_marker_length: int = 0
    container_name: Optional[str] = None
    in_list: bool = False
    list_ordered: Optional[bool] = None
    list_indent: int = 0
    list_may_end: bool = False
    in_footnote: bool = False
    footnote_identifier: Optional[str] = None
    footnote_after_blank: bool = False
    html_block: int = 0             # 1-based index into HTML_BLOCK_KINDS, 0 when closed


# --- line predicates ---

def is_empty_line(line: str) -> bool:
    return RE_EMPTY_LINE.match(line) is not None


def is_heading(line: str) -> bool:
    return RE_HEADING.match(line) is not None


def is_thematic_break(line: str) -> bool:
    return RE_THEMATIC_BREAK.match(line.strip()) is not None


def is_blockquote_start(line: str) -> bool:
    return RE_BLOCKQUOTE.match(line) is not None


def is_footnote_definition_start(line: str) -> bool:
    return RE_FOOTNOTE_DEFINITION.match(line) is not None


def is_footnote_continuation(line: str) -> bool:
    return RE_FOOTNOTE_CONTINUATION.match(line) is not None


def indent_of(line: str) -> int:
    return len(RE_INDENT.match(line).group(1))


def is_list_item_start(line: str) -> Optional[ListItemMatch]:
    """Match a list item marker followed by content or only whitespace."""
    m = RE_LIST_MARKER.match(line)
    if not m:
        return None
    indent, marker, rest = len(m.group(1)), m.group(2), m.group(3)
    # "-foo" and "---" are not items; "- foo" and "-   " are
    if rest and not rest[0].isspace():
        return None
    return ListItemMatch(ordered=RE_ORDERED_MARKER.match(marker) is not None, indent=indent)


def can_interrupt_paragraph(line: str) -> bool:
    """Bullets, or ordered items numbered 1, with content on the marker line."""
    return RE_INTERRUPTING_ITEM.match(line) is not None


def detect_fence_start(line: str, math: bool = False) -> Optional[tuple[str, int]]:
    """Return (fence_char, fence_length) when line opens a fenced block."""
    m = RE_FENCE_START.match(line)
    if m:
        fence = m.group(2)
        return fence[0], len(fence)
    if math and RE_MATH_FENCE.match(line):
        rest = line.strip()[2:]
        # $$ x $$ on one line opens and closes the block at once
        if "$$" in rest:
            return None
        return "$", 2
    return None


@lru_cache(maxsize=64)
def _fence_end_pattern(char: str, length: int) -> re.Pattern:
    return re.compile(rf'^\s{{0,3}}{re.escape(char)}{{{length},}}\s*$')


def detect_fence_end(line: str, context: BlockContext) -> bool:
    if not context.in_fenced_code or not context.fence_char:
        return False
    if context.fence_char == "$":
        return line.rstrip().endswith("$$")
    return _fence_end_pattern(context.fence_char, context.fence_length).match(line) is not None


@lru_cache(maxsize=16)
def _container_pattern(marker: str, min_length: int) -> re.Pattern:
    m = re.escape(marker)
    return re.compile(rf'^(\s*)({m}{{{min_length},}})(?:\s*(\w[\w-]*))?(?:\{{[^}}]*\}})?(?:\s+(.*))?\s*$')


def detect_container(line: str, config: Optional[ContainerConfig] = None) -> Optional[ContainerMatch]:
    """Detect ``::: name`` (open), ``:::name{...}`` (open) or ``:::`` (close)."""
    config = config or ContainerConfig()
    m = _container_pattern(config.marker, config.min_marker_length).match(line)
    if not m:
        return None
    name = m.group(3) or ""
    is_end = not name and not m.group(4)
    if not is_end and config.allowed_names and name not in config.allowed_names:
        return None
    return ContainerMatch(name=name, marker_length=len(m.group(2)), is_end=is_end)


def detect_container_end(line: str, context: BlockContext, config: Optional[ContainerConfig] = None) -> bool:
    if not context.in_container or not context.container_marker_length:
        return False
    found = detect_container(line, config)
    return bool(found) and found.is_end and found.marker_length >= context.container_marker_length


# --- context updaters, tried in order; the first non-None result wins ---

def _update_code(line: str, ctx: BlockContext, math: bool) -> Optional[BlockContext]:
    if ctx.in_fenced_code:
        if detect_fence_end(line, ctx):
            return replace(ctx, in_fenced_code=False, fence_char=None, fence_length=0)
        return ctx
    fence = detect_fence_start(line, math)
    if fence:
        return replace(ctx, in_fenced_code=True, fence_char=fence[0], fence_length=fence[1])
    return None


def _update_container(line: str, ctx: BlockContext, config: Optional[ContainerConfig]) -> Optional[BlockContext]:
    if config is None:
        return None
    if ctx.in_container:
        if detect_container_end(line, ctx, config):
            depth = ctx.container_depth - 1
            if depth == 0:
                return replace(ctx, in_container=False, container_depth=0,
                               container_marker_length=0, container_name=None)
            return replace(ctx, container_depth=depth)
        nested = detect_container(line, config)
        if nested and not nested.is_end:
            return replace(ctx, container_depth=ctx.container_depth + 1)
        # Everything inside a container belongs to it until the closing marker
        return ctx
    found = detect_container(line, config)
    if found and not found.is_end:
        return replace(ctx, in_container=True, container_depth=1,
                       container_marker_length=found.marker_length, container_name=found.name)
    return None


def detect_html_block_start(line: str) -> int:
    """Return the 1-based HTML_BLOCK_KINDS index opened by line, or 0."""
    for kind, (start, _) in enumerate(HTML_BLOCK_KINDS, 1):
        if start.match(line):
            return kind
    return 0


def _update_html(line: str, ctx: BlockContext) -> Optional[BlockContext]:
    if ctx.html_block:
        if HTML_BLOCK_KINDS[ctx.html_block - 1][1].search(line):
            return replace(ctx, html_block=0)
        return ctx
    kind = detect_html_block_start(line)
    if kind and not HTML_BLOCK_KINDS[kind - 1][1].search(line):
        return replace(ctx, html_block=kind)
    return None


def _update_footnote(line: str, ctx: BlockContext) -> Optional[BlockContext]:
    start = RE_FOOTNOTE_DEFINITION.match(line)
    ended = replace(ctx, in_footnote=False, footnote_identifier=None, footnote_after_blank=False)
    if not ctx.in_footnote:
        if start:
            return replace(ctx, in_footnote=True, footnote_identifier=start.group(1), footnote_after_blank=False)
        return None

    if start:
        return replace(ctx, footnote_identifier=start.group(1), footnote_after_blank=False)
    if is_empty_line(line):
        return replace(ctx, footnote_after_blank=True)
    item = is_list_item_start(line)
    if item:
        if item.indent == 0:
            # An unindented list ends the footnote; the list updater takes over
            return None
        return replace(ctx, footnote_after_blank=False)
    if is_heading(line) or detect_fence_start(line) or is_blockquote_start(line):
        return ended
    if is_footnote_continuation(line):
        return replace(ctx, footnote_after_blank=False)
    if not ctx.footnote_after_blank:
        # Lazy continuation of the footnote's open paragraph
        return ctx
    return ended


def _update_list(line: str, ctx: BlockContext) -> Optional[BlockContext]:
    item = is_list_item_start(line)
    ended = replace(ctx, in_list=False, list_ordered=None, list_indent=0, list_may_end=False)

    if not ctx.in_list:
        if item:
            return replace(ctx, in_list=True, list_ordered=item.ordered, list_indent=item.indent, list_may_end=False)
        return None

    continuation = is_empty_line(line) or indent_of(line) > ctx.list_indent
    if ctx.list_may_end:
        if item:
            # Same kind and level continues the list; otherwise a new list starts
            return replace(ctx, list_ordered=item.ordered, list_indent=item.indent, list_may_end=False)
        if continuation:
            return replace(ctx, list_may_end=is_empty_line(line))
        return ended

    if item:
        return None
    if is_empty_line(line):
        return replace(ctx, list_may_end=True)
    if continuation:
        return None
    return ended


def update_context(
    line: str,
    context: BlockContext,
    containers: Optional[ContainerConfig] = None,
    math: bool = False,
    ) -> BlockContext:
    """Return the context after consuming ``line``."""
    result = _update_code(line, context, math)
    if result is None:
        result = _update_container(line, context, containers)
    if result is None:
        result = _update_html(line, context)
    if result is None:
        result = _update_footnote(line, context)
    if result is None:
        if context.in_footnote:
            # Only an unindented list item falls through a footnote
            context = replace(context, in_footnote=False, footnote_identifier=None, footnote_after_blank=False)
        result = _update_list(line, context)
    return context if result is None else result
