"""Per-node-type overrides for character counting and slicing"""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

from mdreveal.core.models import AstNode, NodeType


CountFn = Callable[[AstNode], int]
SliceFn = Callable[[AstNode, int, int], Optional[AstNode]]


@dataclass(frozen=True)
class TransformerPlugin:
    """Claims nodes of ``node_types`` (optionally narrowed by ``match``).

    ``count_chars(node)`` replaces the generic length; ``slice_node(node,
    displayed, total)`` returns what to show once ``displayed`` of ``total``
    units are revealed, or None to show nothing yet.
    """
    name: str
    node_types: frozenset[NodeType]
    match: Optional[Callable[[AstNode], bool]] = None
    count_chars: Optional[CountFn] = None
    slice_node: Optional[SliceFn] = None

    def claims(self, node: AstNode) -> bool:
        return node.type in self.node_types and (self.match is None or self.match(node))


def _whole_or_nothing(node: AstNode, displayed: int, total: int) -> Optional[AstNode]:
    return node if displayed >= total else None


def atomic_plugin(name: str, node_types: Iterable[NodeType], match: Optional[Callable[[AstNode], bool]] = None) -> TransformerPlugin:
    """A plugin revealing the claimed node as one indivisible unit."""
    return TransformerPlugin(
        name=name,
        node_types=frozenset(node_types),
        match=match,
        count_chars=lambda node: 1,
        slice_node=_whole_or_nothing,
    )


MATH_PLUGIN = atomic_plugin("math", {NodeType.math, NodeType.inline_math})
MERMAID_PLUGIN = atomic_plugin("mermaid", {NodeType.code}, match=lambda node: node.props.get("lang") == "mermaid")
IMAGE_PLUGIN = atomic_plugin("image", {NodeType.image})
THEMATIC_BREAK_PLUGIN = atomic_plugin("thematic_break", {NodeType.thematic_break})

DEFAULT_PLUGINS: tuple[TransformerPlugin, ...] = (MERMAID_PLUGIN, IMAGE_PLUGIN, THEMATIC_BREAK_PLUGIN)

BUILTIN_PLUGINS: dict[str, TransformerPlugin] = {
    p.name: p for p in (MATH_PLUGIN, MERMAID_PLUGIN, IMAGE_PLUGIN, THEMATIC_BREAK_PLUGIN)
}


class PluginRegistry:
    """Ordered plugin set; the first plugin that claims a node wins."""

    def __init__(self, plugins: Iterable[TransformerPlugin] = ()):
        self._plugins = list(plugins)

    def find(self, node: AstNode) -> Optional[TransformerPlugin]:
        for plugin in self._plugins:
            if plugin.claims(node):
                return plugin
        return None

    @property
    def names(self) -> list[str]:
        return [p.name for p in self._plugins]

    def __iter__(self) -> Iterator[TransformerPlugin]:
        return iter(self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)


def build_plugins(names: Iterable[str]) -> PluginRegistry:
    """Resolve built-in plugins by name, keeping the given order."""
    plugins = []
    for name in names:
        if name not in BUILTIN_PLUGINS:
            raise ValueError(f"Unknown plugin {name!r} (expected one of {', '.join(BUILTIN_PLUGINS)})")
        plugins.append(BUILTIN_PLUGINS[name])
    return PluginRegistry(plugins)
