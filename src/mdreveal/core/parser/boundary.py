"""Stable line boundary detection for the incremental parser"""

import logging
from dataclasses import dataclass
from typing import Optional

from mdreveal.core.parser.context import (
    BlockContext,
    ContainerConfig,
    can_interrupt_paragraph,
    detect_container,
    detect_container_end,
    detect_fence_start,
    is_blockquote_start,
    is_empty_line,
    is_footnote_continuation,
    is_footnote_definition_start,
    is_heading,
    is_thematic_break,
    update_context,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StableBoundary:
    """Last line index that no further input can change (-1 for none)."""
    line: int
    context: BlockContext


class BoundaryDetector:
    """Scan lines from the first pending line and find the last stable one."""

    def __init__(self, containers: Optional[ContainerConfig] = None, math: bool = False):
        self.containers = containers
        self.math = math

    def find_stable_boundary(self, lines: list[str], start_line: int, context: BlockContext) -> StableBoundary:
        stable_line = -1
        stable_context = context
        current = context
        last = len(lines) - 1

        for i in range(start_line, len(lines)):
            previous = current
            was_open = current.in_fenced_code or current.html_block > 0
            was_in_container = current.in_container
            was_depth = current.container_depth
            current = update_context(lines[i], current, self.containers, self.math)

            if was_open and not (current.in_fenced_code or current.html_block > 0):
                # The closing line may still be growing while it is the last line,
                # and a fence inside a list item leaves the list open
                if i < last and not current.in_list:
                    stable_line, stable_context = i, current
                continue
            if current.in_fenced_code or current.html_block > 0:
                continue

            if was_in_container and was_depth == 1 and not current.in_container:
                if i < last:
                    stable_line, stable_context = i, current
                continue
            if current.in_container:
                continue

            point = self.check_stability(i, current, lines, previous)
            if point >= 0:
                stable_line, stable_context = point, current

        if stable_line >= start_line:
            logger.debug("Stable boundary at line %d (scanned %d-%d)", stable_line, start_line, last)
        return StableBoundary(stable_line, stable_context)

    def check_stability(
        self,
        index: int,
        context: BlockContext,
        lines: list[str],
        previous: Optional[BlockContext] = None,
        ) -> int:
        """Return the last stable line implied by reaching ``lines[index]``, or -1.

        ``context`` is the state after ``lines[index]``, ``previous`` the state before it.
        """
        if index == 0:
            return -1
        line, prev = lines[index], lines[index - 1]

        if previous is not None and previous.in_list and previous.list_may_end and not context.in_list:
            # A blank line then unindented non-list text closed the list
            return index - 1
        if (previous is not None and not previous.in_list and context.in_list
                and not is_empty_line(prev) and can_interrupt_paragraph(line)):
            # A list interrupting other content closes that content
            return index - 1

        if context.in_container:
            if self.containers is not None and detect_container_end(line, context, self.containers):
                return index - 1
            return -1

        if previous is not None and previous.in_footnote and not context.in_footnote and is_empty_line(prev):
            # Unindented text after a blank line closed the footnote
            return index - 1
        if previous is not None and previous.in_footnote and is_footnote_definition_start(line):
            return index - 1

        if context.in_list and not context.list_may_end:
            return -1

        if is_heading(prev) or is_thematic_break(prev):
            return index - 1

        if index >= len(lines) - 1:
            return -1

        if is_footnote_definition_start(prev):
            if is_empty_line(line) or is_footnote_continuation(line):
                return -1
            if is_footnote_definition_start(line):
                return index - 1

        prev_empty = is_empty_line(prev)
        if not prev_empty and is_footnote_continuation(prev):
            return -1

        if not prev_empty and self._starts_new_block(line, prev):
            return index - 1

        if is_empty_line(line) and not prev_empty and not context.in_list and not context.in_footnote:
            return index
        return -1

    def _starts_new_block(self, line: str, prev: str) -> bool:
        if is_footnote_definition_start(line) and not is_footnote_definition_start(prev):
            return True
        if is_heading(line) or detect_fence_start(line, self.math):
            return True
        if is_blockquote_start(line) and not is_blockquote_start(prev):
            return True
        if self.containers is not None:
            opened = detect_container(line, self.containers)
            if opened and not opened.is_end:
                before = detect_container(prev, self.containers)
                return not before or before.is_end
        return False
