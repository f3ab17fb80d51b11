"""
Paraclu - parametric clustering of CTSS by signal density

Frith et al. 2008, "A code for transcription initiation in mammalian genomes".

A segment of positions is a cluster for every density d such that all its
prefixes and suffixes have density >= d. The segment's breaking density is
the smallest prefix or suffix density; above it the segment splits at the
weakest boundary and each half is examined in turn. Every segment is
reported with the density range (min_density, max_density] over which it is
a cluster; stability is max_density / min_density.
"""

import math
from typing import List, Tuple

import numpy as np

Segment = Tuple[int, int, float, float]


def paraclu_hierarchy(positions: np.ndarray, signal: np.ndarray) -> List[Segment]:
    """
    All clusters of one chromosome/strand partition.

    Args:
        positions: sorted, unique positions
        signal: signal at each position

    Returns:
        List of (begin index, end index, min_density, max_density), end
        exclusive. Clusters are nested or disjoint.
    """
    positions = np.asarray(positions, dtype=np.int64)
    signal = np.asarray(signal, dtype=float)
    clusters = []
    if len(positions) == 0:
        return clusters

    stack = [(0, len(positions), -math.inf)]
    while stack:
        beg, end, min_density = stack.pop()
        if end - beg == 1:
            clusters.append((beg, end, min_density, math.inf))
            continue

        pos = positions[beg:end]
        csum = np.cumsum(signal[beg:end])
        # split point k (1..n-1): prefix is [0, k), suffix is [k, n)
        prefix = csum[:-1] / (pos[1:] - pos[0])
        suffix = (csum[-1] - csum[:-1]) / (pos[-1] - pos[:-1])
        i_prefix = int(np.argmin(prefix))
        i_suffix = int(np.argmin(suffix))
        max_density = float(min(prefix[i_prefix], suffix[i_suffix]))

        if max_density > min_density:
            clusters.append((beg, end, min_density, max_density))

        split = beg + 1 + (i_prefix if prefix[i_prefix] < suffix[i_suffix] else i_suffix)
        new_min = max(min_density, max_density)
        stack.append((split, end, new_min))
        stack.append((beg, split, new_min))

    return clusters


def _is_stable(min_density: float, max_density: float, min_stability: float) -> bool:
    if min_density == -math.inf or max_density == math.inf:
        return True
    return max_density >= min_stability * min_density


def paraclu_segments(positions: np.ndarray, signal: np.ndarray,
                     min_stability: float = 1.0, max_length: int = 500) -> List[Tuple[int, int]]:
    """
    Non-overlapping clusters selected from the paraclu hierarchy.

    Clusters that are not stable enough or are longer than max_length are
    dropped; of the rest, the outermost ones are kept.
    """
    positions = np.asarray(positions, dtype=np.int64)
    candidates = [
        (beg, end) for beg, end, min_d, max_d in paraclu_hierarchy(positions, signal)
        if _is_stable(min_d, max_d, min_stability)
        and positions[end - 1] - positions[beg] + 1 <= max_length
    ]
    candidates.sort(key=lambda seg: (seg[0], -seg[1]))

    selected = []
    last_end = 0
    for beg, end in candidates:
        if beg >= last_end:
            selected.append((beg, end))
            last_end = end
    return selected
