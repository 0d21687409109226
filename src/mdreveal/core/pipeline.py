"""Streaming glue: text chunks through the parser and into the display transformer"""

import asyncio
import logging
from typing import Callable, Iterator, Optional

from mdreveal.core.ast.builder import ParserOptions
from mdreveal.core.models import DisplayBlock, ParseUpdate
from mdreveal.core.parser.incremental import IncrementalParser
from mdreveal.core.transform.plugins import PluginRegistry
from mdreveal.core.transform.scheduler import Scheduler
from mdreveal.core.transform.transformer import BlockTransformer, TransformerOptions


logger = logging.getLogger(__name__)


def iter_chunks(text: str, size: int) -> Iterator[str]:
    """Split text into consecutive pieces of at most ``size`` characters."""
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    for i in range(0, len(text), size):
        yield text[i:i + size]


class StreamSession:
    """One parser feeding one transformer; every chunk pushes the full block list."""

    def __init__(self, parser: IncrementalParser, transformer: BlockTransformer):
        self.parser = parser
        self.transformer = transformer

    @classmethod
    def create(
        cls,
        parser_options: Optional[ParserOptions] = None,
        transformer_options: Optional[TransformerOptions] = None,
        plugins: Optional[PluginRegistry] = None,
        on_change: Optional[Callable[[list[DisplayBlock]], None]] = None,
        scheduler: Optional[Scheduler] = None,
        ) -> "StreamSession":
        """Build both halves; ``plugins`` defaults to the transformer's built-in set."""
        kwargs = {"plugins": plugins} if plugins is not None else {}
        transformer = BlockTransformer(transformer_options, on_change=on_change, scheduler=scheduler, **kwargs)
        return cls(IncrementalParser(parser_options), transformer)

    def feed(self, chunk: str) -> ParseUpdate:
        update = self.parser.append(chunk)
        self.transformer.push(self.parser.get_blocks())
        return update

    def finish(self) -> ParseUpdate:
        """End of stream: every block is completed and pushed."""
        update = self.parser.finalize()
        logger.debug("Stream finished with %d blocks", len(self.parser.get_completed_blocks()))
        self.transformer.push(self.parser.get_blocks())
        return update

    def reset(self) -> None:
        self.parser.reset()
        self.transformer.reset()

    async def drain(self, poll: float = 0.01) -> None:
        """Wait on the running loop until every block is display complete."""
        while self.transformer.is_processing() and not self.transformer.is_paused_state():
            await asyncio.sleep(poll)

    async def stream(self, text: str, chunk_size: int, chunk_delay: float = 0.0) -> None:
        """Feed text in chunks with a delay between them, then finish and drain."""
        for chunk in iter_chunks(text, chunk_size):
            self.feed(chunk)
            await asyncio.sleep(chunk_delay)
        self.finish()
        await self.drain()
