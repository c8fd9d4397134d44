"""
Binary descriptor sets and Hamming distance.

A descriptor set is a 2-D uint8 array with one packed bit vector per row,
the layout OpenCV's AKAZE/ORB extractors produce. Row position is the
descriptor's identity, so nothing here reorders or deduplicates rows.

Distances are popcounts of XOR, computed with a 256-entry lookup table so
they work on any numpy version.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

# Bits set in every possible byte value
_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint8)


class InvalidArgument(ValueError):
    """Raised for malformed descriptors, width mismatches and bad query parameters."""


def as_descriptor_set(data) -> np.ndarray:
    """
    Normalize extractor output into a (N, n_bytes) uint8 descriptor set.

    Accepts a 2-D integer array, a sequence of equal-length bytes objects
    or 1-D arrays, None, or an empty array (what extractors return when no
    keypoints are found). Empty inputs become a (0, 0) array, which has no
    width and is compatible with any other set.

    Args:
        data: Descriptor data in one of the accepted forms.

    Returns:
        A read-only uint8 array of shape (N, n_bytes). The input is never
        modified.

    Raises:
        InvalidArgument: If the rows are ragged, the dtype is not integral,
            values fall outside a byte, rows have zero width, or the array has
            more than 2 dims.
    """
    if data is None:
        return np.zeros((0, 0), dtype=np.uint8)

    if isinstance(data, np.ndarray):
        array = data
    elif isinstance(data, (bytes, bytearray)):
        array = np.frombuffer(data, dtype=np.uint8)
    else:
        rows = list(data)
        if not rows:
            return np.zeros((0, 0), dtype=np.uint8)
        rows = [np.frombuffer(r, dtype=np.uint8) if isinstance(r, (bytes, bytearray))
                else np.asarray(r) for r in rows]
        widths = {r.shape for r in rows}
        if len(widths) != 1:
            raise InvalidArgument(f"Descriptors have mismatched widths: {sorted(widths)}")
        array = np.stack(rows)

    if array.size == 0:
        if array.ndim == 2 and array.shape[0] > 0:
            raise InvalidArgument(f"Descriptors have zero width: shape {array.shape}")
        return np.zeros((0, 0), dtype=np.uint8)

    if array.ndim == 1:
        array = array.reshape(1, -1)
    if array.ndim != 2:
        raise InvalidArgument(
            f"Descriptor set must be 2-D (N, n_bytes), got shape {array.shape}"
        )

    if array.dtype != np.uint8:
        if not np.issubdtype(array.dtype, np.integer):
            raise InvalidArgument(f"Descriptors must be integer bytes, got dtype {array.dtype}")
        if array.min() < 0 or array.max() > 255:
            raise InvalidArgument("Descriptor values must fit in a byte (0-255)")
        array = array.astype(np.uint8)

    array = np.ascontiguousarray(array).view()
    array.flags.writeable = False
    return array


def descriptor_bits(descriptors: np.ndarray) -> int:
    """Width W of a descriptor set in bits (0 for an empty set)."""
    return int(descriptors.shape[1]) * 8 if descriptors.ndim == 2 else 0


def check_widths(a: np.ndarray, b: np.ndarray) -> None:
    """
    Ensure two descriptor sets can be compared.

    Empty sets carry no width and always pass.

    Raises:
        InvalidArgument: If both sets are non-empty and widths differ.
    """
    if len(a) == 0 or len(b) == 0:
        return
    if a.shape[1] != b.shape[1]:
        raise InvalidArgument(
            f"Descriptor width mismatch: {descriptor_bits(a)} bits vs "
            f"{descriptor_bits(b)} bits"
        )


def hamming_distance(x, y) -> int:
    """
    Number of differing bits between two packed descriptors.

    Raises:
        InvalidArgument: If the descriptors differ in width.
    """
    x = as_descriptor_set(x)
    y = as_descriptor_set(y)
    if len(x) != 1 or len(y) != 1:
        raise InvalidArgument("hamming_distance compares exactly two descriptors")
    check_widths(x, y)
    return int(_POPCOUNT[np.bitwise_xor(x[0], y[0])].sum(dtype=np.int64))


def hamming_distances(queries: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """
    Pairwise Hamming distances between two descriptor sets.

    Works one byte column at a time, so scratch memory is two (m, n) uint8
    buffers on top of the int32 result, whatever the descriptor width.
    Callers with large query sets should still pass them in chunks.

    Args:
        queries: (m, n_bytes) uint8 descriptors.
        reference: (n, n_bytes) uint8 descriptors.

    Returns:
        (m, n) int32 array of distances in [0, W].
    """
    check_widths(queries, reference)
    if len(queries) == 0 or len(reference) == 0:
        return np.zeros((len(queries), len(reference)), dtype=np.int32)

    distances = np.zeros((len(queries), len(reference)), dtype=np.int32)
    xor = np.empty(distances.shape, dtype=np.uint8)
    bits = np.empty(distances.shape, dtype=np.uint8)
    for byte in range(queries.shape[1]):
        np.bitwise_xor(queries[:, byte, None], reference[None, :, byte], out=xor)
        np.take(_POPCOUNT, xor, out=bits, mode="clip")
        distances += bits

    return distances
