"""Output builders: JSON block summaries and plain-text rendering of display nodes"""

import json
from typing import Iterable, Optional

from mdreveal.core.models import AstNode, DisplayBlock, NodeType, SourceBlock


# Branches whose children are laid out on separate lines
BLOCK_BRANCHES = {
    NodeType.root, NodeType.blockquote, NodeType.list, NodeType.list_item,
    NodeType.container_directive, NodeType.table, NodeType.footnote_definition,
}


def build_text(node: Optional[AstNode]) -> str:
    """Render node as plain text; markup is dropped, block structure kept as lines."""
    if node is None:
        return ""
    if node.value is not None:
        return node.value
    if node.type == NodeType.break_:
        return "\n"
    if node.type == NodeType.thematic_break:
        return "---"
    if node.type == NodeType.image:
        return f"[{node.props.get('alt') or 'image'}]"
    if node.type == NodeType.footnote_reference:
        return f"[^{node.props.get('identifier')}]"
    children = node.children or ()
    if node.type == NodeType.table_row:
        return " | ".join(build_text(c) for c in children)
    if node.type in BLOCK_BRANCHES:
        return "\n".join(build_text(c) for c in children)
    return "".join(build_text(c) for c in children)


def build_display_text(blocks: Iterable[DisplayBlock]) -> str:
    """Join the revealed part of every block, separated by blank lines."""
    return "\n\n".join(build_text(b.display_node) for b in blocks if b.display_node is not None)


def build_block_summary(block: SourceBlock) -> dict:
    return {
        "id": block.id,
        "type": block.node.type.value,
        "status": block.status.value,
        "start": block.start_offset,
        "end": block.end_offset,
        "text": build_text(block.node),
    }


def build_blocks_json(blocks: Iterable[SourceBlock], full: bool = False) -> str:
    """JSON array of block summaries, or full block dumps when ``full``."""
    if full:
        return json.dumps([b.model_dump(mode="json", exclude_none=True) for b in blocks], indent=2)
    return json.dumps([build_block_summary(b) for b in blocks], indent=2)
