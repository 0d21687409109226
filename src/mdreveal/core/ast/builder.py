"""markdown-it tokenization and SyntaxTreeNode to AstNode conversion"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from markdown_it import MarkdownIt
from markdown_it.tree import SyntaxTreeNode
from mdit_py_plugins.container import container_plugin
from mdit_py_plugins.dollarmath import dollarmath_plugin
from mdit_py_plugins.footnote import footnote_plugin
from pydantic import BaseModel, Field

from mdreveal.core.models import AstNode, NodeType


logger = logging.getLogger(__name__)

DIRECTIVE_NAME = "directive"
DIRECTIVE_RE = re.compile(r'^\s*(\w[\w-]*)\s*(?:\{([^}]*)\})?\s*(.*?)\s*$')
ATTRIBUTE_RE = re.compile(r'([\w-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^\s"\']+))|([.#])([\w-]+)')
ALIGN_RE = re.compile(r'text-align:\s*(left|right|center)')

BRANCH_TYPE_MAP: dict[str, NodeType] = {
    'paragraph':     NodeType.paragraph,
    'heading':       NodeType.heading,
    'blockquote':    NodeType.blockquote,
    'bullet_list':   NodeType.list,
    'ordered_list':  NodeType.list,
    'list_item':     NodeType.list_item,
    'table':         NodeType.table,
    'tr':            NodeType.table_row,
    'th':            NodeType.table_cell,
    'td':            NodeType.table_cell,
    'em':            NodeType.emphasis,
    'strong':        NodeType.strong,
    's':             NodeType.delete,
    'link':          NodeType.link,
    f'container_{DIRECTIVE_NAME}': NodeType.container_directive,
    # markdown-it calls a footnote definition a "footnote reference" block
    'footnote_reference': NodeType.footnote_definition,
}

MATH_BLOCK_TYPES = {'math_block', 'math_block_label', 'math_block_eqno'}
MATH_INLINE_TYPES = {'math_inline', 'math_inline_double'}


class ParserOptions(BaseModel):
    """Grammar configuration for the wrapped markdown-it engine."""
    preset: str = Field(default="gfm-like", pattern="^(gfm-like|commonmark)$", description="MarkdownIt preset name")
    math: bool = Field(default=True, description="Enable $inline$ and $$block$$ math")
    containers: bool = Field(default=True, description="Enable ::: name container directives")
    container_marker: str = Field(default=":", min_length=1, max_length=1)
    container_names: list[str] = Field(default_factory=list, description="Allowed container names; empty = any")
    footnotes: bool = Field(default=True, description="Enable [^label] footnote references and definitions")


@dataclass
class ParsedNode:
    """A top-level AstNode with its source line span relative to the parsed text."""
    node: AstNode
    line_map: Optional[tuple[int, int]]


def _split_info(info: str) -> tuple[Optional[str], Optional[str]]:
    """Split a fence info string into (lang, meta)."""
    parts = info.strip().split(maxsplit=1)
    if not parts:
        return None, None
    return parts[0], (parts[1] if len(parts) > 1 else None)


def parse_directive(info: str) -> dict[str, Any]:
    """Parse ``name{key="v" .cls #id} label`` container params into props."""
    m = DIRECTIVE_RE.match(info)
    if not m:
        return {"name": info.strip(), "attributes": {}, "label": None}
    attributes: dict[str, str] = {}
    for key, dq, sq, bare, sigil, short in ATTRIBUTE_RE.findall(m.group(2) or ""):
        if sigil == "#":
            attributes["id"] = short
        elif sigil == ".":
            attributes["class"] = f"{attributes['class']} {short}" if "class" in attributes else short
        elif key:
            attributes[key] = dq or sq or bare
    return {"name": m.group(1), "attributes": attributes, "label": m.group(3) or None}


def make_parser(options: ParserOptions) -> MarkdownIt:
    """Build a MarkdownIt instance with the math, container and footnote plugins requested."""
    md = MarkdownIt(options.preset, options_update={"linkify": False})
    if options.math:
        dollarmath_plugin(md)
    if options.containers:
        allowed = set(options.container_names)

        def _validate(params: str, *args) -> bool:
            m = DIRECTIVE_RE.match(params)
            return bool(m) and (not allowed or m.group(1) in allowed)

        container_plugin(md, DIRECTIVE_NAME, marker=options.container_marker, validate=_validate)
    if options.footnotes:
        # Definitions stay in place as blocks, and a reference matches before its definition arrives
        footnote_plugin(md, inline=False, move_to_end=False, always_match_refs=True)
    return md


class AstBuilder:
    """Parse Markdown text into top-level AstNodes with their line spans."""

    def __init__(self, options: Optional[ParserOptions] = None):
        self.options = options or ParserOptions()
        self._md = make_parser(self.options)

    def parse(self, text: str, references: Optional[dict] = None) -> tuple[list[ParsedNode], dict]:
        """Return (top-level nodes, reference definitions found in text).

        ``references`` seeds the parse so links can resolve definitions that
        arrived in earlier, already completed text.
        """
        env: dict[str, Any] = {"references": dict(references or {})}
        known = set(env["references"])
        try:
            tokens = self._md.parse(text, env)
            tree = SyntaxTreeNode(tokens)
        except Exception:
            logger.exception("markdown-it failed on %d chars; keeping literal text", len(text))
            literal = AstNode(type=NodeType.paragraph, children=(AstNode(type=NodeType.text, value=text),))
            return [ParsedNode(literal, None)], {}

        nodes = []
        for child in tree.children:
            for converted in self._convert(child):
                nodes.append(ParsedNode(converted, child.map))
        found = {k: v for k, v in env.get("references", {}).items() if k not in known}
        return nodes, found

    # --- conversion ---

    def _convert_all(self, children: list[SyntaxTreeNode]) -> list[AstNode]:
        return [n for child in children for n in self._convert(child)]

    def _convert(self, node: SyntaxTreeNode) -> list[AstNode]:
        t = node.type

        if t == 'inline':
            return self._convert_inline(node.children)
        if t in ('thead', 'tbody'):
            return self._convert_all(node.children)
        if t == 'fence':
            lang, meta = _split_info(node.info)
            return [AstNode(type=NodeType.code, value=_strip_eol(node.content), props={"lang": lang, "meta": meta})]
        if t == 'code_block':
            return [AstNode(type=NodeType.code, value=_strip_eol(node.content), props={"lang": None, "meta": None})]
        if t == 'hr':
            return [AstNode(type=NodeType.thematic_break)]
        if t == 'html_block':
            return [AstNode(type=NodeType.html, value=_strip_eol(node.content))]
        if t in MATH_BLOCK_TYPES:
            props = {"label": node.info} if node.info else {}
            return [AstNode(type=NodeType.math, value=node.content.strip("\n"), props=props)]

        node_type = BRANCH_TYPE_MAP.get(t)
        if node_type is None:
            # Unknown construct: keep whatever content it carries as literal text
            logger.debug("Unmapped block token %r", t)
            if node.children:
                return self._convert_all(node.children)
            return [AstNode(type=NodeType.text, value=node.content)] if node.content else []

        return [AstNode(type=node_type, children=tuple(self._convert_all(node.children)), props=self._props(node, t))]

    def _props(self, node: SyntaxTreeNode, t: str) -> dict[str, Any]:
        if t == 'heading':
            return {"depth": int(node.tag[1:])}
        if t in ('bullet_list', 'ordered_list'):
            start = node.attrGet('start')
            return {"ordered": t == 'ordered_list', "start": int(start) if start is not None else (1 if t == 'ordered_list' else None)}
        if t in ('th', 'td'):
            m = ALIGN_RE.search(str(node.attrGet('style') or ''))
            return {"header": t == 'th', "align": m.group(1) if m else None}
        if t == 'link':
            return {"url": node.attrGet('href'), "title": node.attrGet('title')}
        if t == f'container_{DIRECTIVE_NAME}':
            return parse_directive(node.info)
        if t == 'footnote_reference':
            return {"identifier": node.meta.get("label")}
        return {}

    def _convert_inline(self, children: list[SyntaxTreeNode]) -> list[AstNode]:
        """Convert inline tokens, merging adjacent text and soft breaks into one text leaf."""
        out: list[AstNode] = []
        pending_text: list[str] = []

        def flush() -> None:
            if pending_text:
                out.append(AstNode(type=NodeType.text, value="".join(pending_text)))
                pending_text.clear()

        for child in children:
            t = child.type
            if t in ('text', 'text_special'):
                pending_text.append(child.content)
                continue
            if t == 'softbreak':
                pending_text.append("\n")
                continue
            flush()
            if t == 'hardbreak':
                out.append(AstNode(type=NodeType.break_))
            elif t == 'code_inline':
                out.append(AstNode(type=NodeType.inline_code, value=child.content))
            elif t == 'html_inline':
                out.append(AstNode(type=NodeType.html, value=child.content))
            elif t in MATH_INLINE_TYPES:
                out.append(AstNode(type=NodeType.inline_math, value=child.content,
                                   props={"display": t == 'math_inline_double'}))
            elif t == 'footnote_ref':
                out.append(AstNode(type=NodeType.footnote_reference, props={"identifier": child.meta.get("label")}))
            elif t == 'image':
                out.append(AstNode(type=NodeType.image, props={
                    "url": child.attrGet('src'), "alt": child.content, "title": child.attrGet('title'),
                }))
            elif t in BRANCH_TYPE_MAP:
                out.append(AstNode(type=BRANCH_TYPE_MAP[t], children=tuple(self._convert_inline(child.children)),
                                   props=self._props(child, t)))
            else:
                logger.debug("Unmapped inline token %r", t)
                if child.content:
                    pending_text.append(child.content)
        flush()
        return out


def _strip_eol(content: str) -> str:
    return content[:-1] if content.endswith("\n") else content
