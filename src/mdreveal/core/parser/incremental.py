"""Incremental block parser: a growing buffer split into completed and pending blocks"""

import logging
from typing import Any, Callable, Iterable, Optional

from mdreveal.core.ast.builder import AstBuilder, ParsedNode, ParserOptions
from mdreveal.core.models import AstNode, BlockStatus, NodeType, ParserState, ParseUpdate, SourceBlock
from mdreveal.core.parser.boundary import BoundaryDetector
from mdreveal.core.parser.context import BlockContext, ContainerConfig


logger = logging.getLogger(__name__)

ChangeListener = Callable[[ParserState], None]


def _container_config(options: ParserOptions) -> Optional[ContainerConfig]:
    if not options.containers:
        return None
    return ContainerConfig(marker=options.container_marker, allowed_names=tuple(options.container_names))


def _collect_footnote_references(nodes: Iterable[AstNode], order: list[str]) -> list[str]:
    """Append footnote labels referenced under nodes to order, first occurrence only."""
    for node in nodes:
        if node.type == NodeType.footnote_reference:
            label = node.props.get("identifier")
            if label not in order:
                order.append(label)
        if node.children:
            _collect_footnote_references(node.children, order)
    return order


class IncrementalParser:
    """Owns one Markdown buffer and re-parses only its unstable tail on append.

    Text up to the last stable line is parsed once into completed blocks; the
    rest is re-parsed on every append into pending blocks. Block ids are the
    buffer offset where the block starts, so a growing block keeps its id.
    """

    def __init__(self, options: Optional[ParserOptions] = None, on_change: Optional[ChangeListener] = None):
        self.options = options or ParserOptions()
        self.on_change = on_change
        self._configure()
        self._clear()

    def _configure(self) -> None:
        self._builder = AstBuilder(self.options)
        self._detector = BoundaryDetector(_container_config(self.options), math=self.options.math)

    def _clear(self) -> None:
        self._lines: list[str] = []
        self._offsets: list[int] = [0]
        self._completed: list[SourceBlock] = []
        self._pending: list[SourceBlock] = []
        self._pending_start = 0
        self._context = BlockContext()
        self._definitions: dict[str, dict[str, Any]] = {}
        self._footnote_definitions: dict[str, AstNode] = {}
        self._footnote_order: list[str] = []

    # --- buffer bookkeeping ---

    def _update_lines(self, chunk: str) -> None:
        parts = chunk.split("\n")
        if not self._lines:
            self._lines = parts
            self._offsets = [0]
            for line in parts[:-1]:
                self._offsets.append(self._offsets[-1] + len(line) + 1)
            return
        self._lines[-1] += parts[0]
        for part in parts[1:]:
            self._offsets.append(self._offsets[-1] + len(self._lines[-1]) + 1)
            self._lines.append(part)

    def _line_end(self, index: int) -> int:
        return self._offsets[index] + len(self._lines[index])

    def _to_blocks(self, parsed: list[ParsedNode], first_line: int, last_line: int, status: BlockStatus) -> list[SourceBlock]:
        """Attach ids, status and source spans to nodes parsed from lines[first_line:last_line + 1]."""
        blocks: list[SourceBlock] = []
        seen: dict[str, int] = {}
        for item in parsed:
            if item.line_map is not None:
                start = first_line + item.line_map[0]
                end = min(first_line + max(item.line_map[1], item.line_map[0] + 1), last_line + 1) - 1
            else:
                start, end = first_line, last_line
            block_id = str(self._offsets[start])
            if block_id in seen:
                # Several nodes from one source line; keep ids unique
                seen[block_id] += 1
                block_id = f"{block_id}-{seen[block_id]}"
            else:
                seen[block_id] = 0
            blocks.append(SourceBlock(
                id=block_id,
                node=item.node,
                status=status,
                start_offset=self._offsets[start],
                end_offset=self._line_end(end),
                raw_text="\n".join(self._lines[start:end + 1]),
            ))
        return blocks

    def _parse_lines(self, first_line: int, last_line: int, status: BlockStatus) -> tuple[list[SourceBlock], dict]:
        text = "\n".join(self._lines[first_line:last_line + 1])
        parsed, found = self._builder.parse(text, self._definitions)
        return self._to_blocks(parsed, first_line, last_line, status), found

    def _complete(self, blocks: list[SourceBlock], found: dict) -> None:
        self._completed.extend(blocks)
        self._definitions.update(found)
        for block in blocks:
            if block.node.type == NodeType.footnote_definition:
                self._footnote_definitions[block.node.props["identifier"]] = block.node
        _collect_footnote_references((b.node for b in blocks), self._footnote_order)

    def _fill(self, update: ParseUpdate) -> ParseUpdate:
        update.pending = list(self._pending)
        update.definitions = dict(self._definitions)
        update.footnote_definitions = self.get_footnote_definitions()
        update.footnote_reference_order = self.get_footnote_reference_order()
        return update

    # --- public API ---

    def append(self, chunk: str) -> ParseUpdate:
        """Add text to the buffer; return newly completed blocks and the pending tail."""
        self._update_lines(chunk)
        boundary = self._detector.find_stable_boundary(self._lines, self._pending_start, self._context)
        update = ParseUpdate()

        if boundary.line >= self._pending_start:
            new_blocks, found = self._parse_lines(self._pending_start, boundary.line, BlockStatus.completed)
            self._complete(new_blocks, found)
            update.completed = new_blocks
            self._context = boundary.context
            self._pending_start = boundary.line + 1

        self._pending = []
        if self._pending_start < len(self._lines):
            tail = self._lines[self._pending_start:]
            if "".join(tail).strip():
                self._pending, _ = self._parse_lines(self._pending_start, len(self._lines) - 1, BlockStatus.pending)
        self._emit_change()
        return self._fill(update)

    def finalize(self) -> ParseUpdate:
        """Mark everything still pending as completed."""
        update = ParseUpdate()
        if self._pending_start < len(self._lines):
            tail = self._lines[self._pending_start:]
            if "".join(tail).strip():
                final_blocks, found = self._parse_lines(self._pending_start, len(self._lines) - 1, BlockStatus.completed)
                self._complete(final_blocks, found)
                update.completed = final_blocks
        self._pending = []
        self._pending_start = len(self._lines)
        self._emit_change()
        return self._fill(update)

    def abort(self) -> ParseUpdate:
        """Stop a stream early, e.g. on user cancel; the pending tail is kept as completed."""
        logger.debug("Parse aborted with %d pending blocks", len(self._pending))
        return self.finalize()

    def reset(self) -> None:
        self._clear()
        self._emit_change()

    def render(self, content: str) -> ParseUpdate:
        """Parse a whole document in one go; equivalent to reset, append, finalize."""
        self.reset()
        self.append(content)
        return self.finalize()

    def update_options(self, **changes) -> None:
        """Apply new parser options; the buffer is discarded."""
        self.options = ParserOptions.model_validate({**self.options.model_dump(), **changes})
        self._configure()
        self.reset()

    def get_buffer(self) -> str:
        return "\n".join(self._lines)

    def get_completed_blocks(self) -> list[SourceBlock]:
        return list(self._completed)

    def get_blocks(self) -> list[SourceBlock]:
        """Completed blocks followed by the current pending tail, in document order."""
        return self._completed + self._pending

    def get_ast(self) -> AstNode:
        return AstNode(type=NodeType.root, children=tuple(b.node for b in self.get_blocks()))

    def get_definitions(self) -> dict[str, dict[str, Any]]:
        return dict(self._definitions)

    def get_footnote_definitions(self) -> dict[str, AstNode]:
        """Footnote definition nodes from completed blocks, keyed by label."""
        return dict(self._footnote_definitions)

    def get_footnote_reference_order(self) -> list[str]:
        """Footnote labels in the order they are first referenced, pending text included."""
        return _collect_footnote_references((b.node for b in self._pending), list(self._footnote_order))

    def _emit_change(self) -> None:
        if self.on_change is None:
            return
        state = ParserState(
            completed_blocks=list(self._completed),
            pending_blocks=list(self._pending),
            markdown=self.get_buffer(),
            definitions=dict(self._definitions),
            footnote_definitions=self.get_footnote_definitions(),
            footnote_reference_order=self.get_footnote_reference_order(),
        )
        try:
            self.on_change(state)
        except Exception:
            logger.exception("Parser change listener failed")
