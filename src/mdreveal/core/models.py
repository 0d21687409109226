"""Data models shared by the incremental parser and the display transformer"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeType(str, Enum):
    """Closed set of AST node kinds produced by the block grammar"""
    root = "root"
    paragraph = "paragraph"
    heading = "heading"
    thematic_break = "thematic_break"
    blockquote = "blockquote"
    list = "list"
    list_item = "list_item"
    code = "code"
    math = "math"
    html = "html"
    table = "table"
    table_row = "table_row"
    table_cell = "table_cell"
    container_directive = "container_directive"
    text = "text"
    emphasis = "emphasis"
    strong = "strong"
    delete = "delete"
    inline_code = "inline_code"
    inline_math = "inline_math"
    break_ = "break"
    link = "link"
    image = "image"
    footnote_definition = "footnote_definition"
    footnote_reference = "footnote_reference"


# Leaves whose content is a string value
LITERAL_TYPES = frozenset({
    NodeType.text, NodeType.code, NodeType.math, NodeType.html,
    NodeType.inline_code, NodeType.inline_math,
})

# Leaves without content; each one is a single indivisible unit
VOID_TYPES = frozenset({NodeType.thematic_break, NodeType.break_, NodeType.image, NodeType.footnote_reference})


class BlockStatus(str, Enum):
    """Parser classification: could more input still change the block?"""
    pending = "pending"
    completed = "completed"


class TextChunk(BaseModel):
    """A slice of newly revealed text, kept so a renderer can fade it in."""
    model_config = ConfigDict(frozen=True)

    text: str
    created_at: float               # scheduler clock, seconds


class AstNode(BaseModel):
    """Immutable Markdown node; either a literal leaf, a void leaf or a branch."""
    model_config = ConfigDict(frozen=True)

    type: NodeType
    value: Optional[str] = None
    children: Optional[tuple[AstNode, ...]] = None
    props: dict[str, Any] = Field(default_factory=dict)
    stable_length: Optional[int] = None     # prefix of value that needs no animation
    chunks: Optional[tuple[TextChunk, ...]] = None

    @property
    def is_literal(self) -> bool:
        return self.value is not None

    @property
    def is_parent(self) -> bool:
        return self.children is not None


class AccumulatedChunks(BaseModel):
    """Reveal history of one block: settled prefix plus still-animating chunks."""
    stable_chars: int = 0
    chunks: list[TextChunk] = Field(default_factory=list)


class SourceBlock(BaseModel):
    """A top-level block as classified by the parser."""
    model_config = ConfigDict(frozen=True)

    id: str
    node: AstNode
    status: BlockStatus = BlockStatus.pending
    start_offset: int = 0
    end_offset: int = 0
    raw_text: str = ""


class DisplayBlock(BaseModel):
    """What a renderer should show for one block right now."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_node: Optional[AstNode] = None
    is_display_complete: bool = False


class ParseUpdate(BaseModel):
    """Result of one append/finalize call."""
    completed: list[SourceBlock] = Field(default_factory=list)   # new since the last call
    pending: list[SourceBlock] = Field(default_factory=list)     # full unstable tail
    definitions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    footnote_definitions: dict[str, AstNode] = Field(default_factory=dict)
    footnote_reference_order: list[str] = Field(default_factory=list)


class ParserState(BaseModel):
    """Snapshot handed to parser change listeners."""
    completed_blocks: list[SourceBlock]
    pending_blocks: list[SourceBlock]
    markdown: str
    definitions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    footnote_definitions: dict[str, AstNode] = Field(default_factory=dict)
    footnote_reference_order: list[str] = Field(default_factory=list)


AstNode.model_rebuild()
