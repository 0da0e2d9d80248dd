"""Top-k selection and log-domain helpers shared by search and rescoring."""

import heapq
import math
from typing import List, Sequence, Tuple

NEG_INF = -float("inf")


def log_add(x: float, y: float) -> float:
    """Compute log(exp(x) + exp(y)) without leaving the log domain.

    Examples:
        >>> log_add(float("-inf"), -1.0)
        -1.0

    """
    if x == NEG_INF:
        return y
    if y == NEG_INF:
        return x
    m = max(x, y)
    return m + math.log(math.exp(x - m) + math.exp(y - m))


def select_topk(values: Sequence[float], k: int) -> Tuple[List[float], List[int]]:
    """Select the k largest values and their original indices.

    Both outputs are ordered by descending value; equal values keep ascending
    original index order. A min-heap of capacity k is seeded with the first
    k elements and its minimum is replaced only by strictly greater values,
    which runs in O(n log k).

    Args:
        values (Sequence[float]): Candidate values
        k (int): Number of elements to keep

    Returns:
        Tuple[List[float], List[int]]: Top values and their indices

    Examples:
        >>> select_topk([1.0, 3.0, 3.0, 2.0], 2)
        ([3.0, 3.0], [1, 2])

    """
    n = len(values)
    if k <= 0 or n == 0:
        return [], []

    # (value, -index): the heap top is the smallest value and, among equal
    # values, the one seen last
    heap = [(values[i], -i) for i in range(min(k, n))]
    heapq.heapify(heap)
    for i in range(k, n):
        if heap[0][0] < values[i]:
            heapq.heapreplace(heap, (values[i], -i))

    ordered = sorted(heap, reverse=True)
    return [v for v, _ in ordered], [-i for _, i in ordered]
