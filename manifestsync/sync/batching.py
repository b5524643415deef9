"""Size-bounded batching of transfer items."""

from collections.abc import Iterable

from ..models import Batch, TransferItem
from ..utils import MAX_BATCH_SIZE


def plan_batches(
    items: Iterable[TransferItem], budget: int = MAX_BATCH_SIZE
) -> list[Batch]:
    """Group transfer items into contiguous batches bounded by a byte budget.

    Greedy single pass that preserves input order: an item that would push a
    non-empty batch over the budget starts a new batch. An item larger than
    the budget on its own forms a one-item batch; items are never split.

    Args:
        items: Transfer items in the order they should be sent
        budget: Maximum number of bytes per batch

    Returns:
        List of non-empty batches; concatenated they reproduce the input

    Raises:
        ValueError: If budget is not positive

    Examples:
        >>> # three items of 4 MB each
        >>> [len(b) for b in plan_batches(items, budget=10_000_000)]
        [2, 1]
    """
    if budget <= 0:
        raise ValueError(f"Batch budget must be positive, got {budget}")

    batches: list[Batch] = []
    current = Batch()
    current_size = 0

    for item in items:
        if current.items and current_size + item.byte_size > budget:
            batches.append(current)
            current = Batch()
            current_size = 0

        current.items.append(item)
        current_size += item.byte_size

    if current.items:
        batches.append(current)

    return batches
