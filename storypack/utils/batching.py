"""Batching utilities for judge calls."""

from typing import Callable, List, TypeVar

from storypack.utils.logging import get_logger
from storypack.utils.token_counter import TokenCounter

LOGGER = get_logger(__name__)

T = TypeVar("T")


class BatchProcessor:
    """Utilities for splitting work into judge-sized batches."""

    @staticmethod
    def create_batches(items: List[T], batch_size: int) -> List[List[T]]:
        """Create batches from a list of items.

        Args:
            items: List of items to batch
            batch_size: Number of items per batch

        Returns:
            List of batches, each containing up to batch_size items

        Example:
            >>> BatchProcessor.create_batches([1, 2, 3, 4, 5], 2)
            [[1, 2], [3, 4], [5]]
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]

        LOGGER.debug(
            f"Created {len(batches)} batches from {len(items)} items "
            f"(batch_size={batch_size})"
        )

        return batches

    @staticmethod
    def create_token_batches(
        items: List[T],
        text_of: Callable[[T], str],
        max_items: int,
        max_tokens: int,
        token_counter: TokenCounter = None,
    ) -> List[List[T]]:
        """Create batches bounded by both item count and estimated tokens.

        An item whose own estimate exceeds ``max_tokens`` is placed alone in
        a batch; callers truncate item text before batching so this only
        happens with pathological budgets.

        Args:
            items: Items to batch, in order
            text_of: Returns the prompt text an item contributes
            max_items: Maximum items per batch
            max_tokens: Maximum estimated tokens per batch
            token_counter: Optional counter (a fresh one is used otherwise)

        Returns:
            List of batches preserving input order
        """
        if max_items <= 0 or max_tokens <= 0:
            raise ValueError("max_items and max_tokens must be positive")

        counter = token_counter or TokenCounter()
        batches: List[List[T]] = []
        current: List[T] = []
        current_tokens = 0

        for item in items:
            item_tokens = counter.count_tokens(text_of(item))
            if current and (
                len(current) >= max_items or current_tokens + item_tokens > max_tokens
            ):
                batches.append(current)
                current = []
                current_tokens = 0
            current.append(item)
            current_tokens += item_tokens

        if current:
            batches.append(current)

        LOGGER.debug(
            f"Created {len(batches)} token-bounded batches from {len(items)} items",
            extra={"max_items": max_items, "max_tokens": max_tokens},
        )

        return batches
