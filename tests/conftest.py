"""Root test configuration: block factories, a virtual clock and env isolation"""

import os

import pytest

from mdreveal.core.models import AstNode, BlockStatus, NodeType, SourceBlock
from mdreveal.core.transform.scheduler import ManualScheduler


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch):
    """Drop MDREVEAL_* variables from the developer's shell."""
    for name in list(os.environ):
        if name.startswith("MDREVEAL_"):
            monkeypatch.delenv(name)


@pytest.fixture(name="scheduler")
def scheduler_fixture():
    return ManualScheduler()


@pytest.fixture(name="paragraph")
def paragraph_fixture():
    """Build a paragraph node holding a single text leaf."""
    def _paragraph(text: str) -> AstNode:
        return AstNode(type=NodeType.paragraph, children=(AstNode(type=NodeType.text, value=text),))
    return _paragraph


@pytest.fixture(name="make_block")
def make_block_fixture(paragraph):
    """Build a SourceBlock around a paragraph, or around any given node."""
    def _make(block_id: str, text: str = "", status: BlockStatus = BlockStatus.pending, node: AstNode = None) -> SourceBlock:
        return SourceBlock(id=block_id, node=node or paragraph(text), status=status)
    return _make
