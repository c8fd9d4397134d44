"""
Exact k-nearest-neighbor search over binary descriptors.

Two interchangeable backends answer the same queries with identical output:
    linear  numpy linear scan, popcount of XOR (the reference behavior)
    faiss   faiss.IndexBinaryFlat brute force, with boundary ties resolved
            through a range search so ordering matches the linear scan

Results are always sorted by ascending distance, ties broken by ascending
reference index. Only exact search is offered; no IVF, HNSW or LSH.
"""

import os
import logging
from typing import List, NamedTuple, Tuple

import faiss
import numpy as np

from .descriptors import (
    InvalidArgument, as_descriptor_set, check_widths, descriptor_bits,
    hamming_distances,
)

logger = logging.getLogger(__name__)

# Backend used when build() is called without one
KNN_BACKEND = os.environ.get("KNN_BACKEND", "linear")

# Queries per distance block. Each block holds (chunk, n) int32 distances plus
# two (chunk, n) uint8 scratch buffers, once per worker thread.
KNN_CHUNK_SIZE = int(os.environ.get("KNN_CHUNK_SIZE", "256"))


def check_positive(name: str, value, default: int) -> int:
    """
    Resolve an optional count setting such as workers or chunk_size.

    None falls back to default, which is checked the same way so a bad
    environment value fails here too.

    Raises:
        InvalidArgument: If the resolved value is not an integer >= 1.
    """
    if value is None:
        value = default
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")
    return int(value)


class NeighborResult(NamedTuple):
    """One neighbor of a query: its position in the reference set and its distance."""
    index: int
    distance: int


class _KnnIndex:
    """Shared validation and chunking for the index backends."""

    name = None

    def __init__(self, reference):
        self.reference = as_descriptor_set(reference)

    def __len__(self) -> int:
        return len(self.reference)

    @property
    def bits(self) -> int:
        return descriptor_bits(self.reference)

    def query(self, descriptor, k: int) -> List[NeighborResult]:
        """
        Find the k nearest reference descriptors to a single descriptor.

        Args:
            descriptor: One packed descriptor (1-D array or bytes).
            k: Number of neighbors wanted.

        Returns:
            min(k, len(reference)) results, nearest first.

        Raises:
            InvalidArgument: If k <= 0, the reference set is empty, or
                the descriptor width differs from the reference width.
        """
        queries = as_descriptor_set(descriptor)
        if len(queries) != 1:
            raise InvalidArgument(f"query() takes one descriptor, got {len(queries)}")
        distances, indices = self.query_batch(queries, k)
        return [NeighborResult(int(i), int(d)) for i, d in zip(indices[0], distances[0])]

    def query_batch(self, queries, k: int,
                    chunk_size: int = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorized k-NN for many queries at once.

        Returns:
            Tuple of (distances, indices), each of shape (m, min(k, n)).
            Row r holds the neighbors of queries[r] in query() order.
        """
        queries = as_descriptor_set(queries)
        chunk_size = check_positive("chunk_size", chunk_size, KNN_CHUNK_SIZE)
        self._validate(queries, k)

        k = min(k, len(self.reference))
        distances = np.empty((len(queries), k), dtype=np.int32)
        indices = np.empty((len(queries), k), dtype=np.int64)

        for start in range(0, len(queries), chunk_size):
            stop = start + chunk_size
            distances[start:stop], indices[start:stop] = self._search(queries[start:stop], k)

        return distances, indices

    def _validate(self, queries: np.ndarray, k: int) -> None:
        if k <= 0:
            raise InvalidArgument(f"k must be positive, got {k}")
        if len(self.reference) == 0:
            raise InvalidArgument("Cannot query an empty reference set")
        check_widths(queries, self.reference)

    def _search(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError


class LinearKnn(_KnnIndex):
    """
    Linear-scan index: a view over the reference set, nothing precomputed.

    A stable argsort keeps equal distances in reference order, which is the
    tie-break every backend must reproduce.
    """

    name = "linear"

    def _search(self, queries, k):
        dist = hamming_distances(queries, self.reference)
        order = np.argsort(dist, axis=1, kind="stable")[:, :k]
        return np.take_along_axis(dist, order, axis=1), order


class FaissKnn(_KnnIndex):
    """
    Exact binary index backed by faiss.IndexBinaryFlat.

    faiss does not promise an order among equal distances, so after the
    k-NN search every neighbor within the k-th distance is fetched with a
    range search and re-ranked by (distance, index).
    """

    name = "faiss"

    def __init__(self, reference):
        super().__init__(reference)
        self._index = None
        if len(self.reference):
            self._index = faiss.IndexBinaryFlat(self.bits)
            self._index.add(np.array(self.reference))
            logger.debug(f"Built IndexBinaryFlat: {self._index.ntotal} vectors, {self.bits} bits")

    def _search(self, queries, k):
        # Descriptor sets are read-only views; faiss gets writeable buffers
        queries = np.require(queries, requirements=["C", "W"])
        distances, _ = self._index.search(queries, k)

        # distances < radius, so +1 keeps everything tied with the k-th neighbor
        radius = int(distances[:, -1].max()) + 1
        lims, range_dist, range_idx = self._index.range_search(queries, radius)

        out_dist = np.empty((len(queries), k), dtype=np.int32)
        out_idx = np.empty((len(queries), k), dtype=np.int64)
        for row in range(len(queries)):
            row_dist = range_dist[lims[row]:lims[row + 1]]
            row_idx = range_idx[lims[row]:lims[row + 1]]
            order = np.lexsort((row_idx, row_dist))[:k]
            out_dist[row] = row_dist[order]
            out_idx[row] = row_idx[order]

        return out_dist, out_idx


BACKENDS = {
    LinearKnn.name: LinearKnn,
    FaissKnn.name: FaissKnn,
}


def resolve_backend(backend: str = None):
    """
    Look up an index class by backend name (KNN_BACKEND when None).

    Raises:
        InvalidArgument: If the backend name is unknown.
    """
    backend = backend or KNN_BACKEND
    try:
        return BACKENDS[backend]
    except KeyError:
        raise InvalidArgument(
            f"Unknown KNN backend {backend!r}; expected one of {sorted(BACKENDS)}"
        ) from None


def build(reference, backend: str = None) -> _KnnIndex:
    """
    Build a nearest-neighbor index over a reference descriptor set.

    Building never fails for a well-formed set; an empty reference builds
    fine and only fails when queried.

    Args:
        reference: Descriptor set (see as_descriptor_set for accepted forms).
        backend: "linear" or "faiss". Defaults to KNN_BACKEND.

    Raises:
        InvalidArgument: If the backend name is unknown.
    """
    backend = backend or KNN_BACKEND
    index = resolve_backend(backend)(reference)
    logger.debug(f"Built {backend} index over {len(index)} descriptors")
    return index
