"""AST measurement, truncation and structure-sharing merge"""

import logging
from typing import Optional

from mdreveal.core.models import AccumulatedChunks, AstNode, TextChunk
from mdreveal.core.transform.plugins import PluginRegistry


logger = logging.getLogger(__name__)

# Stands in for one indivisible unit (image, break, atomic plugin node) in node_text
OBJECT_REPLACEMENT = "\ufffc"


def count_chars(node: AstNode, plugins: Optional[PluginRegistry] = None) -> int:
    """Revealable length of node: leaf text lengths, 1 per void leaf, or a plugin's count."""
    plugin = plugins.find(node) if plugins else None
    if plugin is not None and plugin.count_chars is not None:
        return plugin.count_chars(node)
    if node.value is not None:
        return len(node.value)
    if node.children is not None:
        return sum(count_chars(child, plugins) for child in node.children)
    return 1


def node_text(node: AstNode, plugins: Optional[PluginRegistry] = None) -> str:
    """The revealable character stream of node, aligned with count_chars."""
    plugin = plugins.find(node) if plugins else None
    if plugin is not None and plugin.count_chars is not None:
        return OBJECT_REPLACEMENT * plugin.count_chars(node)
    if node.value is not None:
        return node.value
    if node.children is not None:
        return "".join(node_text(child, plugins) for child in node.children)
    return OBJECT_REPLACEMENT


def _chunk_ranges(accumulated: Optional[AccumulatedChunks]) -> list[tuple[int, int, TextChunk]]:
    if not accumulated or not accumulated.chunks:
        return []
    ranges = []
    start = accumulated.stable_chars
    for chunk in accumulated.chunks:
        ranges.append((start, start + len(chunk.text), chunk))
        start += len(chunk.text)
    return ranges


class _Slicer:
    """One truncation pass; ``remaining`` is shared across the whole walk."""

    def __init__(self, remaining: int, skip: int, ranges: list, plugins: Optional[PluginRegistry]):
        self.remaining = remaining
        self.skip = skip
        self.ranges = ranges
        self.plugins = plugins

    def slice(self, node: AstNode, start: int) -> Optional[AstNode]:
        if self.remaining <= 0:
            return None

        plugin = self.plugins.find(node) if self.plugins else None
        if plugin is not None and plugin.slice_node is not None:
            total = count_chars(node, self.plugins)
            offset = max(0, self.skip - start)
            take = min(self.remaining, total - offset)
            if take <= 0:
                return None
            self.remaining -= take
            try:
                return plugin.slice_node(node, offset + take, total)
            except Exception:
                logger.exception("Plugin %r failed on %s node; showing it unsliced", plugin.name, node.type.value)
                return node

        if node.value is not None:
            return self._slice_literal(node, start)

        if node.children is not None:
            children = []
            child_start = start
            for child in node.children:
                if self.remaining <= 0:
                    break
                size = count_chars(child, self.plugins)
                if child_start + size > self.skip:
                    part = self.slice(child, child_start)
                    if part is not None:
                        children.append(part)
                child_start += size
            if not children:
                return None
            return node.model_copy(update={"children": tuple(children)})

        if start + 1 <= self.skip:
            return None
        self.remaining -= 1
        return node

    def _slice_literal(self, node: AstNode, start: int) -> Optional[AstNode]:
        value = node.value
        if start + len(value) <= self.skip:
            return None
        offset = max(0, self.skip - start)
        take = min(len(value) - offset, self.remaining)
        if take <= 0:
            return None
        self.remaining -= take
        sliced = value[offset:offset + take]
        update: dict = {"value": sliced}

        if self.ranges:
            begin = start + offset
            chunks = []
            stable = take
            for lo, hi, chunk in self.ranges:
                a, b = max(lo, begin), min(hi, begin + take)
                if a < b:
                    if not chunks:
                        stable = a - begin
                    chunks.append(TextChunk(text=sliced[a - begin:b - begin], created_at=chunk.created_at))
            if chunks:
                update["stable_length"] = stable
                update["chunks"] = tuple(chunks)
        return node.model_copy(update=update)


def slice_ast(
    node: AstNode,
    max_chars: int,
    accumulated_chunks: Optional[AccumulatedChunks] = None,
    skip_chars: int = 0,
    plugins: Optional[PluginRegistry] = None,
    ) -> Optional[AstNode]:
    """Copy of node holding only its first ``max_chars`` characters.

    With ``skip_chars`` only the part after that many characters is kept.
    Returns None when nothing would be shown.
    """
    if max_chars <= 0 or skip_chars >= max_chars:
        return None
    slicer = _Slicer(max_chars - skip_chars, max(0, skip_chars), _chunk_ranges(accumulated_chunks), plugins)
    return slicer.slice(node, 0)


def _merge(base: AstNode, full: AstNode) -> AstNode:
    if base.type != full.type or full.value is not None:
        return full
    if base.children is None or full.children is None:
        return full
    old, new = base.children, full.children
    if not old or len(new) < len(old):
        return full
    last = len(old) - 1
    merged = _merge(old[last], new[last])
    return full.model_copy(update={"children": old[:last] + (merged,) + new[len(old):]})


def append_to_ast(
    base_node: Optional[AstNode],
    source_node: AstNode,
    start_chars: int,
    end_chars: int,
    accumulated_chunks: Optional[AccumulatedChunks] = None,
    plugins: Optional[PluginRegistry] = None,
    ) -> Optional[AstNode]:
    """Extend a display node from ``start_chars`` to ``end_chars`` revealed characters.

    Children of ``base_node`` before its last one are reused as-is, so only
    the nodes along the growing edge are rebuilt.
    """
    if end_chars <= start_chars:
        return base_node
    full = slice_ast(source_node, end_chars, accumulated_chunks, plugins=plugins)
    if full is None:
        return base_node
    if base_node is None:
        return full
    return _merge(base_node, full)
