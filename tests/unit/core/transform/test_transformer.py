"""Unit tests for core/transform/transformer.py"""

import asyncio
import logging
import random

import pytest
from pydantic import ValidationError

from mdreveal.core.models import AstNode, BlockStatus, NodeType
from mdreveal.core.transform.plugins import DEFAULT_PLUGINS
from mdreveal.core.transform.slicing import node_text
from mdreveal.core.transform.transformer import BlockTransformer, Effect, TransformerOptions


DONE = BlockStatus.completed


@pytest.fixture(name="events")
def events_fixture():
    return []


@pytest.fixture(name="make_transformer")
def make_transformer_fixture(scheduler, events):
    """Build a transformer on the virtual clock with one-second ticks."""
    def _make(plugins=DEFAULT_PLUGINS, rng=None, **options):
        options.setdefault("tick_interval", 1.0)
        return BlockTransformer(
            TransformerOptions(**options), plugins=plugins, on_change=events.append, scheduler=scheduler, rng=rng)
    return _make


def _shown(transformer, index=0):
    node = transformer.get_display_blocks()[index].display_node
    return node_text(node) if node is not None else None


def test_effect_none_shows_everything(make_transformer, make_block, scheduler):
    """Without an effect blocks appear whole and nothing is scheduled."""
    transformer = make_transformer(effect="none")
    transformer.push([make_block("a", "Hello", DONE)])
    block = transformer.get_display_blocks()[0]
    assert block.is_display_complete
    assert node_text(block.display_node) == "Hello"
    assert scheduler.pending == 0
    assert not transformer.is_processing()


def test_typing_reveals_chars_per_tick(make_transformer, make_block, scheduler):
    """Each tick adds chars_per_tick characters to the current block."""
    transformer = make_transformer(chars_per_tick=2)
    transformer.push([make_block("a", "Hello world", DONE)])
    assert _shown(transformer) is None

    scheduler.advance(0)
    assert _shown(transformer) == "He"
    scheduler.advance(1.0)
    assert _shown(transformer) == "Hell"

    scheduler.run_until_idle()
    assert _shown(transformer) == "Hello world"
    assert transformer.get_display_blocks()[0].is_display_complete
    assert not transformer.is_processing()
    assert transformer.current_block_id() is None


def test_on_change_gets_full_display_list(make_transformer, make_block, scheduler, events):
    """Listeners receive every block, queued ones with no display node."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hi", DONE), make_block("b", "Yo", DONE)])
    scheduler.advance(0)
    latest = events[-1]
    assert [b.id for b in latest] == ["a", "b"]
    assert latest[1].display_node is None


def test_pending_block_holds_later_blocks(make_transformer, make_block, scheduler):
    """A fully shown pending block is not complete and later blocks wait for it."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hi"), make_block("b", "Yo", DONE)])
    scheduler.run_until_idle()
    assert _shown(transformer, 0) == "Hi"
    assert not transformer.get_display_blocks()[0].is_display_complete
    assert _shown(transformer, 1) is None
    assert transformer.current_block_id() == "a"
    assert transformer.is_processing()

    transformer.push([make_block("a", "Hi", DONE), make_block("b", "Yo", DONE)])
    scheduler.run_until_idle()
    assert [b.is_display_complete for b in transformer.get_display_blocks()] == [True, True]


def test_growing_block_continues_from_revealed(make_transformer, make_block, scheduler):
    """New content on a known block keeps what is already shown and reveals the rest."""
    transformer = make_transformer(chars_per_tick=1)
    transformer.push([make_block("a", "Hel")])
    scheduler.run_until_idle()
    assert _shown(transformer) == "Hel"

    transformer.push([make_block("a", "Hello")])
    scheduler.advance(0)
    assert _shown(transformer) == "Hell"
    scheduler.run_until_idle()
    assert _shown(transformer) == "Hello"


def test_removed_blocks_disappear(make_transformer, make_block, scheduler):
    """Blocks missing from a push are dropped, as when a container absorbs them."""
    transformer = make_transformer(effect="none")
    transformer.push([make_block("0", "a"), make_block("5", "b")])
    container = AstNode(type=NodeType.container_directive, props={"name": "tip"}, children=(
        AstNode(type=NodeType.paragraph, children=(AstNode(type=NodeType.text, value="a b"),)),
    ))
    transformer.push([make_block("0", node=container)])
    assert [b.id for b in transformer.get_display_blocks()] == ["0"]
    assert transformer.get_display_blocks()[0].display_node == container


def test_skip_completes_everything(make_transformer, make_block, scheduler):
    """skip shows every block fully, completes pending ones and is idempotent."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hello", DONE), make_block("b", "World")])
    transformer.skip()
    transformer.skip()
    blocks = transformer.get_display_blocks()
    assert [b.is_display_complete for b in blocks] == [True, True]
    assert [_shown(transformer, i) for i in range(2)] == ["Hello", "World"]
    assert scheduler.pending == 0
    assert not transformer.is_processing()


def test_growth_after_skip_resumes_reveal(make_transformer, make_block, scheduler):
    """Content added after skip is revealed normally."""
    transformer = make_transformer(chars_per_tick=3)
    transformer.push([make_block("a", "Hello")])
    transformer.skip()
    transformer.push([make_block("a", "Hello world")])
    assert _shown(transformer) == "Hello"
    assert not transformer.get_display_blocks()[0].is_display_complete
    scheduler.advance(0)
    assert _shown(transformer) == "Hello wo"


def test_random_range_uses_rng(make_transformer, make_block, scheduler, events):
    """A (min, max) range reveals a seeded random count within bounds each tick."""
    transformer = make_transformer(chars_per_tick=(1, 3), rng=random.Random(7))
    transformer.push([make_block("a", "abcdefghijklmnopqrstuvwxyz", DONE)])
    scheduler.run_until_idle()
    lengths = [len(node_text(e[0].display_node)) for e in events if e[0].display_node is not None]
    steps = [b - a for a, b in zip([0] + lengths, lengths)]
    assert lengths[-1] == 26
    assert all(1 <= s <= 3 for s in steps)


def test_range_must_be_ordered():
    """min > max is rejected."""
    with pytest.raises(ValidationError):
        TransformerOptions(chars_per_tick=(3, 1))


def test_fade_in_chunks_fold_after_duration(make_transformer, make_block, scheduler):
    """Fade-in leaves report young chunks; chunks older than fade_duration become stable."""
    transformer = make_transformer(effect="fade-in", chars_per_tick=5, tick_interval=0.1, fade_duration=0.15)
    transformer.push([make_block("a", "Hello world", DONE)])
    scheduler.advance(0)
    leaf = transformer.get_display_blocks()[0].display_node.children[0]
    assert leaf.stable_length == 0
    assert [c.text for c in leaf.chunks] == ["Hello"]

    scheduler.advance(0.1)
    scheduler.advance(0.1)
    leaf = transformer.get_display_blocks()[0].display_node.children[0]
    assert leaf.value == "Hello world"
    assert leaf.stable_length == 5
    assert [c.text for c in leaf.chunks] == [" worl", "d"]
    assert leaf.chunks[0].created_at == pytest.approx(0.1)


def test_typing_leaves_have_no_chunks(make_transformer, make_block, scheduler):
    """Only fade-in annotates chunks."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hello", DONE)])
    scheduler.advance(0)
    leaf = transformer.get_display_blocks()[0].display_node.children[0]
    assert leaf.chunks is None and leaf.stable_length is None


def test_pause_and_resume(make_transformer, make_block, scheduler):
    """Paused transformers keep their state and schedule nothing."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hello world", DONE)])
    scheduler.advance(0)
    transformer.pause()
    assert transformer.is_paused_state()
    assert scheduler.pending == 0
    scheduler.advance(10)
    assert _shown(transformer) == "He"

    transformer.resume()
    scheduler.advance(0)
    assert _shown(transformer) == "Hell"


def test_hidden_pauses_only_with_pause_on_hidden(make_transformer, make_block, scheduler):
    """Visibility changes pause ticking unless pause_on_hidden is off."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hello", DONE)])
    transformer.set_visibility(False)
    assert transformer.is_paused_state()
    scheduler.run_until_idle()
    assert _shown(transformer) is None
    transformer.set_visibility(True)
    scheduler.run_until_idle()
    assert _shown(transformer) == "Hello"

    other = make_transformer(pause_on_hidden=False)
    other.set_visibility(False)
    assert not other.is_paused_state()


def test_set_options_applies_next_tick(make_transformer, make_block, scheduler):
    """A new pace applies from the next tick; effect none reveals everything."""
    transformer = make_transformer(chars_per_tick=1)
    transformer.push([make_block("a", "Hello world", DONE)])
    scheduler.advance(0)
    transformer.set_options(chars_per_tick=4)
    scheduler.advance(1.0)
    assert _shown(transformer) == "Hello"

    transformer.set_options(effect="none")
    assert transformer.get_effect() == Effect.none
    assert _shown(transformer) == "Hello world"
    assert transformer.get_display_blocks()[0].is_display_complete


def test_reset_and_destroy(make_transformer, make_block, scheduler, events):
    """reset clears blocks but keeps working; destroy stops everything."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hello", DONE)])
    transformer.reset()
    assert events[-1] == []
    assert transformer.get_display_blocks() == []
    assert scheduler.pending == 0

    transformer.push([make_block("b", "Yo", DONE)])
    assert [b.id for b in transformer.get_display_blocks()] == ["b"]

    transformer.destroy()
    transformer.push([make_block("c", "x", DONE)])
    assert transformer.get_display_blocks() == []
    assert scheduler.pending == 0


def test_listener_errors_are_logged(make_block, scheduler, caplog):
    """A raising on_change does not stop the reveal."""
    def boom(blocks):
        raise RuntimeError("listener")

    transformer = BlockTransformer(on_change=boom, scheduler=scheduler)
    with caplog.at_level(logging.ERROR):
        transformer.push([make_block("a", "Hello", DONE)])
        scheduler.run_until_idle()
    assert _shown(transformer) == "Hello"
    assert "Display change listener failed" in caplog.text


def test_malformed_and_duplicate_blocks_dropped(make_transformer, make_block, caplog):
    """Invalid entries and repeated ids are skipped with a warning."""
    transformer = make_transformer(effect="none")
    with caplog.at_level(logging.WARNING):
        transformer.push([{"id": "bad"}, make_block("a", "x"), make_block("a", "y")])
    assert [b.id for b in transformer.get_display_blocks()] == ["a"]
    assert _shown(transformer) == "x"
    assert "Dropping malformed block" in caplog.text
    assert "duplicate block id" in caplog.text


def test_push_accepts_plain_dicts(make_transformer, make_block):
    """Serialized blocks validate into SourceBlocks."""
    transformer = make_transformer(effect="none")
    transformer.push([make_block("a", "Hi", DONE).model_dump()])
    assert _shown(transformer) == "Hi"


def test_atomic_plugin_node_appears_whole(make_transformer, make_block, scheduler):
    """Mermaid code counts as one unit; without the plugin it types out."""
    diagram = AstNode(type=NodeType.code, value="graph TD", props={"lang": "mermaid"})
    transformer = make_transformer()
    transformer.push([make_block("a", node=diagram, status=DONE)])
    scheduler.advance(0)
    assert transformer.get_display_blocks()[0].display_node == diagram

    plain = make_transformer(plugins=())
    plain.push([make_block("b", node=diagram, status=DONE)])
    scheduler.advance(0)
    assert plain.get_display_blocks()[0].display_node.value == "gr"


def test_empty_block_shows_immediately(make_transformer, make_block):
    """Blocks with nothing to reveal display their node at once."""
    empty = AstNode(type=NodeType.code, value="")
    transformer = make_transformer()
    transformer.push([make_block("a", node=empty, status=DONE)])
    block = transformer.get_display_blocks()[0]
    assert block.display_node == empty
    assert block.is_display_complete


def test_all_complete_fires_once_per_transition(make_block, scheduler):
    """on_all_complete fires when everything finishes, and again only after new work."""
    calls = []
    transformer = BlockTransformer(on_all_complete=lambda: calls.append(1), scheduler=scheduler)
    transformer.push([make_block("a", "Hi", DONE)])
    scheduler.run_until_idle()
    transformer.push([make_block("a", "Hi", DONE)])
    assert len(calls) == 1

    transformer.push([make_block("a", "Hi", DONE), make_block("b", "Yo", DONE)])
    scheduler.run_until_idle()
    assert len(calls) == 2


def test_needs_a_scheduler_outside_event_loop(make_block):
    """Without a scheduler or running loop ticking cannot start."""
    transformer = BlockTransformer()
    with pytest.raises(RuntimeError, match="scheduler"):
        transformer.push([make_block("a", "Hello", DONE)])


def test_runs_on_asyncio_loop(make_block):
    """Inside a running loop the transformer schedules on it."""
    async def main():
        done = asyncio.Event()
        transformer = BlockTransformer(
            TransformerOptions(chars_per_tick=3, tick_interval=0.001), on_all_complete=done.set)
        transformer.push([make_block("a", "Hello world", DONE)])
        await asyncio.wait_for(done.wait(), timeout=5)
        return transformer.get_display_blocks()

    blocks = asyncio.run(main())
    assert blocks[0].is_display_complete
    assert node_text(blocks[0].display_node) == "Hello world"


def test_late_completion_with_extra_text(make_transformer, make_block, scheduler):
    """A block revealed in full while pending finishes the added text once completed."""
    transformer = make_transformer()
    transformer.push([make_block("0", "Hello World")])
    scheduler.run_until_idle()
    assert not transformer.get_display_blocks()[0].is_display_complete

    transformer.push([make_block("0", "Hello World!", DONE)])
    scheduler.run_until_idle()
    block = transformer.get_display_blocks()[0]
    assert block.is_display_complete
    assert node_text(block.display_node) == "Hello World!"


def test_empty_push_clears_display(make_transformer, make_block):
    """An empty or missing snapshot leaves nothing to display."""
    transformer = make_transformer(effect="none")
    transformer.push([make_block("a", "x")])
    transformer.push([])
    assert transformer.get_display_blocks() == []
    transformer.push(None)
    assert transformer.get_display_blocks() == []


def test_fade_in_settles_after_reveal(make_transformer, make_block, scheduler):
    """Once typing ends one more tick folds the last chunks and the annotations go away."""
    transformer = make_transformer(effect="fade-in", chars_per_tick=5, fade_duration=0.5)
    transformer.push([make_block("a", "Hello world", DONE)])
    scheduler.advance(0)
    scheduler.advance(1.0)
    scheduler.advance(1.0)
    leaf = transformer.get_display_blocks()[0].display_node.children[0]
    assert [c.text for c in leaf.chunks] == ["d"]

    scheduler.run_until_idle()
    block = transformer.get_display_blocks()[0]
    leaf = block.display_node.children[0]
    assert leaf.chunks is None and leaf.stable_length is None
    assert node_text(block.display_node) == "Hello world"
    assert scheduler.pending == 0


def test_completion_without_tick(make_transformer, make_block, scheduler, events):
    """A fully revealed pending block turns complete on the push that completes it."""
    transformer = make_transformer()
    transformer.push([make_block("a", "Hi"), make_block("b", "Yo", DONE)])
    scheduler.run_until_idle()
    assert not transformer.get_display_blocks()[0].is_display_complete

    transformer.push([make_block("a", "Hi", DONE), make_block("b", "Yo", DONE)])
    assert transformer.get_display_blocks()[0].is_display_complete
    assert events[-1][0].is_display_complete
    assert transformer.current_block_id() == "b"
    assert transformer.get_display_blocks()[1].display_node is None
