"""
Symmetric descriptor matching with a Hamming margin test.

A one-directional pass finds, for every descriptor in A, its nearest
descriptor in B and keeps it only if it beats the second-nearest by more
than a fixed margin. Symmetric matching runs that pass both ways and keeps
the pairs that pick each other.

Why both directions: take three features on a line, X---Y-Z. X's nearest
neighbor is Y, but Y's nearest is Z. The pair (X, Y) holds in one
direction only and is dropped; (Y, Z) is confirmed both ways and kept.

The margin is an integer Hamming separation, not Lowe's float ratio.
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import numpy as np

from .descriptors import InvalidArgument, as_descriptor_set, check_widths
from .knn import KNN_CHUNK_SIZE, build, check_positive, resolve_backend

logger = logging.getLogger(__name__)

# Minimum Hamming separation between best and second-best neighbor,
# in bits of a 512-bit descriptor. Higher = stricter matching.
DEFAULT_MARGIN = int(os.environ.get("MATCH_MARGIN", "24"))

# Worker threads per one-directional pass
DEFAULT_WORKERS = int(os.environ.get("MATCH_WORKERS", str(os.cpu_count() or 1)))

# Neighbors retrieved per query. The margin test needs exactly two.
NEIGHBORS = 2

# Marks "no confident match" in the internal index arrays
NO_MATCH = -1


def _best_matches(a: np.ndarray, b: np.ndarray, margin: int,
                  backend: str, workers: int, chunk_size: int) -> np.ndarray:
    """
    One-directional pass over validated descriptor sets.

    Returns an int64 array of length len(a) holding the accepted index
    into b, or NO_MATCH.
    """
    best = np.full(len(a), NO_MATCH, dtype=np.int64)
    if len(a) == 0 or len(b) == 0:
        return best

    index = build(b, backend=backend)

    def match_chunk(start: int) -> None:
        stop = min(start + chunk_size, len(a))
        distances, indices = index.query_batch(a[start:stop], NEIGHBORS, chunk_size)
        if distances.shape[1] < NEIGHBORS:
            # Only one candidate exists: nothing to be ambiguous with
            accepted = np.ones(stop - start, dtype=bool)
        else:
            accepted = distances[:, 0] + margin < distances[:, 1]
        # Each chunk owns a disjoint slice of best
        best[start:stop] = np.where(accepted, indices[:, 0], NO_MATCH)

    starts = range(0, len(a), chunk_size)
    if workers == 1 or len(starts) == 1:
        for start in starts:
            match_chunk(start)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            # list() re-raises the first worker exception
            list(executor.map(match_chunk, starts))

    return best


def _validate_margin(margin: int) -> int:
    if margin is None:
        return DEFAULT_MARGIN
    if margin < 0:
        raise InvalidArgument(f"margin must be non-negative, got {margin}")
    return int(margin)


def match_one_directional(a, b,
                          margin: int = None,
                          backend: str = None,
                          workers: int = None,
                          chunk_size: int = None) -> List[Optional[int]]:
    """
    Find a confident best match in b for every descriptor in a.

    a[i] matches b[j] when j is a's nearest neighbor in b and
    ``dist(a[i], b[j]) + margin < dist(a[i], second nearest)``. With a
    single descriptor in b the only neighbor is accepted.

    Args:
        a: Source descriptor set.
        b: Target descriptor set.
        margin: Required distance separation. Defaults to DEFAULT_MARGIN.
        backend: KNN backend name ("linear" or "faiss").
        workers: Worker threads; 1 runs inline.
        chunk_size: Source descriptors per worker task.

    Returns:
        List of length len(a): the matched index into b, or None.
        Empty a gives []; empty b gives all None.

    Raises:
        InvalidArgument: On width mismatch, malformed input, a negative
            margin, or workers or chunk_size below 1. Checked before any
            distance is computed.
    """
    margin = _validate_margin(margin)
    resolve_backend(backend)
    workers = check_positive("workers", workers, DEFAULT_WORKERS)
    chunk_size = check_positive("chunk_size", chunk_size, KNN_CHUNK_SIZE)
    a = as_descriptor_set(a)
    b = as_descriptor_set(b)
    check_widths(a, b)

    if len(a) == 0 or len(b) == 0:
        logger.warning(f"Empty descriptor set ({len(a)} vs {len(b)}), no matches")

    best = _best_matches(a, b, margin, backend, workers, chunk_size)
    return [None if j == NO_MATCH else int(j) for j in best]


def symmetric_match(a, b,
                    margin: int = None,
                    backend: str = None,
                    workers: int = None,
                    chunk_size: int = None) -> np.ndarray:
    """
    Match two descriptor sets, keeping only mutually confirmed pairs.

    Runs the a->b and b->a passes concurrently, then keeps [i, j] iff
    a[i] picked b[j] and b[j] picked a[i]. Each index appears at most once
    on each side.

    Args:
        a: Descriptors from the first image.
        b: Descriptors from the second image.
        margin: Required distance separation. Defaults to DEFAULT_MARGIN.
        backend: KNN backend name ("linear" or "faiss").
        workers: Worker threads per pass.
        chunk_size: Source descriptors per worker task.

    Returns:
        (M, 2) int64 array of [index_a, index_b] rows, ascending index_a.
        Empty (0, 2) when either set is empty.

    Raises:
        InvalidArgument: On width mismatch, malformed input, a negative
            margin, or workers or chunk_size below 1. No partial result is
            returned.
    """
    margin = _validate_margin(margin)
    resolve_backend(backend)
    workers = check_positive("workers", workers, DEFAULT_WORKERS)
    chunk_size = check_positive("chunk_size", chunk_size, KNN_CHUNK_SIZE)
    a = as_descriptor_set(a)
    b = as_descriptor_set(b)
    check_widths(a, b)

    if len(a) == 0 or len(b) == 0:
        logger.warning(f"Empty descriptor set ({len(a)} vs {len(b)}), no matches")
        return np.zeros((0, 2), dtype=np.int64)

    with ThreadPoolExecutor(max_workers=2) as executor:
        forward_future = executor.submit(
            _best_matches, a, b, margin, backend, workers, chunk_size)
        reverse_future = executor.submit(
            _best_matches, b, a, margin, backend, workers, chunk_size)
        forward = forward_future.result()
        reverse = reverse_future.result()

    a_idx = np.flatnonzero(forward != NO_MATCH)
    b_idx = forward[a_idx]
    mutual = reverse[b_idx] == a_idx
    matches = np.column_stack((a_idx[mutual], b_idx[mutual])).astype(np.int64)

    logger.info(
        f"Symmetric matching: {len(a_idx)} forward, "
        f"{int(np.count_nonzero(reverse != NO_MATCH))} reverse, "
        f"{len(matches)} symmetric"
    )

    return matches


def match_keypoints(matches: np.ndarray,
                    keypoints_a: Sequence,
                    keypoints_b: Sequence) -> np.ndarray:
    """
    Turn index pairs into point correspondences for drawing.

    Args:
        matches: (M, 2) array from symmetric_match().
        keypoints_a: Keypoints of the first image, aligned with its
            descriptors. cv2.KeyPoint (anything with .pt) or (x, y) pairs.
        keypoints_b: Keypoints of the second image.

    Returns:
        (M, 4) float32 array of [x_a, y_a, x_b, y_b].

    Raises:
        InvalidArgument: If a match refers past the end of a keypoint list.
    """
    matches = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
    if len(matches) and (matches[:, 0].max() >= len(keypoints_a)
                         or matches[:, 1].max() >= len(keypoints_b)):
        raise InvalidArgument("Match index out of range for the given keypoints")

    def point(kp):
        return getattr(kp, "pt", kp)

    pts_a = [point(keypoints_a[i]) for i in matches[:, 0]]
    pts_b = [point(keypoints_b[j]) for j in matches[:, 1]]
    if not pts_a:
        return np.zeros((0, 4), dtype=np.float32)
    return np.hstack((np.float32(pts_a), np.float32(pts_b)))


class SymmetricMatcher:
    """
    Symmetric matcher bound to one configuration.

    Holds margin, backend and worker settings so callers matching many
    image pairs configure once.
    """

    def __init__(self, margin: int = None, backend: str = None,
                 workers: int = None, chunk_size: int = None):
        self.margin = _validate_margin(margin)
        resolve_backend(backend)
        self.backend = backend
        self.workers = check_positive("workers", workers, DEFAULT_WORKERS)
        self.chunk_size = check_positive("chunk_size", chunk_size, KNN_CHUNK_SIZE)

    def match_one_directional(self, a, b) -> List[Optional[int]]:
        return match_one_directional(a, b, self.margin, self.backend,
                                     self.workers, self.chunk_size)

    def match(self, a, b) -> np.ndarray:
        return symmetric_match(a, b, self.margin, self.backend,
                               self.workers, self.chunk_size)
