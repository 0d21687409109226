"""Display transformer: reveals parsed blocks at a controlled character rate"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, Field, PositiveInt, ValidationError, model_validator

from mdreveal.core.models import AccumulatedChunks, AstNode, BlockStatus, DisplayBlock, SourceBlock, TextChunk
from mdreveal.core.transform.plugins import DEFAULT_PLUGINS, PluginRegistry, TransformerPlugin
from mdreveal.core.transform.scheduler import Handle, Scheduler
from mdreveal.core.transform.slicing import append_to_ast, count_chars, node_text, slice_ast


logger = logging.getLogger(__name__)

# Seconds of clock drift allowed when a chunk is due to fold
FOLD_TOLERANCE = 1e-6

ChangeListener = Callable[[list[DisplayBlock]], None]


class Effect(str, Enum):
    none = "none"
    fade_in = "fade-in"
    typing = "typing"


class TransformerOptions(BaseModel):
    """Reveal pace and effect."""
    chars_per_tick: Union[PositiveInt, tuple[PositiveInt, PositiveInt]] = Field(
        default=2, description="Characters per tick, or a (min, max) range picked at random each tick")
    tick_interval: float = Field(default=0.03, gt=0, description="Seconds between ticks")
    effect: Effect = Effect.typing
    pause_on_hidden: bool = True
    fade_duration: float = Field(default=0.3, ge=0, description="Seconds a fade-in chunk stays animated")

    @model_validator(mode="after")
    def _check_range(self) -> "TransformerOptions":
        if isinstance(self.chars_per_tick, tuple) and self.chars_per_tick[0] > self.chars_per_tick[1]:
            raise ValueError(f"chars_per_tick range {self.chars_per_tick} has min > max")
        return self


@dataclass
class _BlockState:
    id: str
    node: AstNode
    status: BlockStatus
    total: int
    revealed: int = 0
    display_node: Optional[AstNode] = None
    chunks: AccumulatedChunks = field(default_factory=AccumulatedChunks)
    forced: bool = False

    @property
    def complete(self) -> bool:
        return self.revealed >= self.total and (self.status == BlockStatus.completed or self.forced)

    def to_display(self) -> DisplayBlock:
        return DisplayBlock(id=self.id, display_node=self.display_node, is_display_complete=self.complete)


class BlockTransformer:
    """Turn pushed SourceBlock snapshots into progressively revealed DisplayBlocks.

    One block reveals at a time: the first one not yet display complete.
    Every tick grows it by ``chars_per_tick`` and hands the whole display list
    to ``on_change``. Ticks run on ``scheduler`` (an asyncio loop by default).
    """

    def __init__(
        self,
        options: Optional[TransformerOptions] = None,
        plugins: Union[PluginRegistry, Iterable[TransformerPlugin], None] = DEFAULT_PLUGINS,
        on_change: Optional[ChangeListener] = None,
        on_all_complete: Optional[Callable[[], None]] = None,
        scheduler: Optional[Scheduler] = None,
        rng: Optional[random.Random] = None,
        ):
        self.options = options or TransformerOptions()
        self.plugins = plugins if isinstance(plugins, PluginRegistry) else PluginRegistry(plugins or ())
        self.on_change = on_change
        self.on_all_complete = on_all_complete
        self._scheduler = scheduler
        self._rng = rng or random.Random()
        self._blocks: list[_BlockState] = []
        self._timer: Optional[Handle] = None
        self._paused = False
        self._hidden = False
        self._destroyed = False
        self._all_complete_notified = False

    # --- input ---

    def push(self, source_blocks: Iterable[Any]) -> None:
        """Replace the known block list with the latest ordered snapshot."""
        if self._destroyed:
            return
        known = {b.id: b for b in self._blocks}
        states: list[_BlockState] = []
        seen: set[str] = set()

        for raw in source_blocks or ():
            block = self._validate(raw)
            if block is None:
                continue
            if block.id in seen:
                logger.warning("Dropping duplicate block id %r in push", block.id)
                continue
            seen.add(block.id)
            state = known.get(block.id)
            if state is None:
                state = self._new_state(block)
            else:
                self._update_state(state, block)
            states.append(state)

        removed = [i for i in known if i not in seen]
        if removed:
            logger.debug("Removed blocks %s", removed)
        self._blocks = states

        if self.options.effect == Effect.none:
            self._reveal_all()
        self._emit()
        self._schedule(0.0)

    def _validate(self, raw: Any) -> Optional[SourceBlock]:
        if isinstance(raw, SourceBlock):
            return raw
        try:
            return SourceBlock.model_validate(raw)
        except ValidationError as e:
            logger.warning("Dropping malformed block (%d validation errors)", e.error_count())
            return None

    def _new_state(self, block: SourceBlock) -> _BlockState:
        state = _BlockState(block.id, block.node, block.status, count_chars(block.node, self.plugins))
        if state.total == 0:
            state.display_node = block.node
        return state

    def _update_state(self, state: _BlockState, block: SourceBlock) -> None:
        state.status = block.status
        if block.node is state.node:
            return
        state.node = block.node
        state.total = count_chars(block.node, self.plugins)
        if state.forced and state.revealed < state.total:
            # Content grew after skip(); keep revealing from where it stopped
            state.forced = False
        if state.total == 0:
            state.display_node = block.node
        elif state.revealed > 0:
            state.display_node = append_to_ast(
                state.display_node, state.node, 0, min(state.revealed, state.total), self._chunks_for(state), self.plugins)

    # --- reveal ---

    def _chunks_for(self, state: _BlockState) -> Optional[AccumulatedChunks]:
        return state.chunks if self.options.effect == Effect.fade_in else None

    def _step(self) -> int:
        step = self.options.chars_per_tick
        if isinstance(step, tuple):
            return self._rng.randint(step[0], step[1])
        return step

    def _advance(self, state: _BlockState, target: int) -> None:
        start = state.revealed
        if self.options.effect == Effect.fade_in:
            now = self._get_scheduler().time()
            text = node_text(state.node, self.plugins)[start:target]
            if text:
                state.chunks.chunks.append(TextChunk(text=text, created_at=now))
            self._fold_chunks(state, now)
        state.revealed = target
        try:
            state.display_node = append_to_ast(
                state.display_node, state.node, start, target, self._chunks_for(state), self.plugins)
        except Exception:
            logger.exception("Slicing block %s failed; showing it unsliced", state.id)
            state.display_node = state.node

    def _fold_chunks(self, state: _BlockState, now: float) -> bool:
        """Move chunks older than fade_duration into the stable prefix; True if any moved."""
        acc = state.chunks
        folded = False
        while acc.chunks and acc.chunks[0].created_at + self.options.fade_duration <= now + FOLD_TOLERANCE:
            acc.stable_chars += len(acc.chunks.pop(0).text)
            folded = True
        return folded

    def _settle(self) -> None:
        """Fold aged chunks of fully revealed blocks; drop the annotations once none remain."""
        if self.options.effect != Effect.fade_in:
            return
        now = self._get_scheduler().time()
        for state in self._blocks:
            if state.revealed < state.total or not self._fold_chunks(state, now):
                continue
            if state.chunks.chunks:
                state.display_node = slice_ast(state.node, state.revealed, state.chunks, plugins=self.plugins)
            else:
                state.chunks = AccumulatedChunks()
                state.display_node = state.node

    def _settle_delay(self) -> Optional[float]:
        """Seconds until the oldest unsettled chunk is due to fold, or None."""
        if self.options.effect != Effect.fade_in:
            return None
        oldest = [s.chunks.chunks[0].created_at for s in self._blocks if s.chunks.chunks]
        if not oldest:
            return None
        return max(0.0, min(oldest) + self.options.fade_duration - self._get_scheduler().time())

    def _reveal_full(self, state: _BlockState) -> None:
        state.revealed = max(state.revealed, state.total)
        state.display_node = state.node
        state.chunks = AccumulatedChunks()

    def _reveal_all(self) -> None:
        for state in self._blocks:
            self._reveal_full(state)

    def _current(self) -> Optional[_BlockState]:
        for state in self._blocks:
            if not state.complete:
                return state
        return None

    # --- scheduling ---

    def _get_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            try:
                self._scheduler = asyncio.get_running_loop()
            except RuntimeError as e:
                raise RuntimeError("BlockTransformer needs a scheduler or a running asyncio event loop") from e
        return self._scheduler

    def _schedule(self, delay: float) -> None:
        if self._timer is not None or self._destroyed or self.is_paused_state():
            return
        if self.options.effect == Effect.none:
            return
        state = self._current()
        if state is None or state.revealed >= state.total:
            # Nothing left to type; wake once more when fade-in chunks are due to settle
            settle = self._settle_delay()
            if settle is not None:
                self._timer = self._get_scheduler().call_later(max(delay, settle), self._tick)
            return
        self._timer = self._get_scheduler().call_later(delay, self._tick)

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        self._timer = None
        if self._destroyed or self.is_paused_state():
            return
        state = self._current()
        if state is not None and state.revealed < state.total:
            self._advance(state, min(state.total, state.revealed + self._step()))
        self._settle()
        self._emit()
        self._schedule(self.options.tick_interval)

    # --- output ---

    def _emit(self) -> None:
        if self.on_change is not None:
            try:
                self.on_change(self.get_display_blocks())
            except Exception:
                logger.exception("Display change listener failed")
        done = bool(self._blocks) and all(s.complete for s in self._blocks)
        if done and not self._all_complete_notified:
            self._all_complete_notified = True
            if self.on_all_complete is not None:
                try:
                    self.on_all_complete()
                except Exception:
                    logger.exception("All-complete listener failed")
        elif not done:
            self._all_complete_notified = False

    # --- controls ---

    def skip(self) -> None:
        """Show every block in full and mark it display complete."""
        if self._destroyed:
            return
        self._cancel()
        for state in self._blocks:
            self._reveal_full(state)
            state.forced = True
        self._emit()

    def pause(self) -> None:
        self._paused = True
        self._cancel()

    def resume(self) -> None:
        self._paused = False
        self._schedule(0.0)

    def set_visibility(self, visible: bool) -> None:
        """Host visibility hint; hidden pauses ticking when pause_on_hidden is set."""
        self._hidden = not visible
        if self.is_paused_state():
            self._cancel()
        else:
            self._schedule(0.0)

    def set_options(self, **changes) -> None:
        """Update options; pace changes apply from the next tick."""
        self.options = TransformerOptions.model_validate({**self.options.model_dump(), **changes})
        if self.options.effect == Effect.none:
            self._cancel()
            self._reveal_all()
            self._emit()
        elif self.is_paused_state():
            self._cancel()
        else:
            self._schedule(0.0)

    def reset(self) -> None:
        """Forget every block; the transformer stays usable."""
        self._cancel()
        self._blocks = []
        self._all_complete_notified = False
        if not self._destroyed:
            self._emit()

    def destroy(self) -> None:
        self._cancel()
        self._blocks = []
        self._destroyed = True
        self.on_change = None
        self.on_all_complete = None

    # --- queries ---

    def get_display_blocks(self) -> list[DisplayBlock]:
        return [s.to_display() for s in self._blocks]

    def is_processing(self) -> bool:
        return any(not s.complete for s in self._blocks)

    def is_paused_state(self) -> bool:
        return self._paused or (self._hidden and self.options.pause_on_hidden)

    def get_effect(self) -> Effect:
        return self.options.effect

    def current_block_id(self) -> Optional[str]:
        """Id of the block being revealed, for drawing a typing cursor after it."""
        state = self._current()
        return state.id if state is not None else None
