"""Shared test fixtures for descriptor matching tests."""

import numpy as np
import pytest

# 512-bit descriptors, the AKAZE width
N_BYTES = 64


def flip(descriptor: np.ndarray, bits) -> np.ndarray:
    """Return a copy of a packed descriptor with the given bit positions flipped."""
    unpacked = np.unpackbits(descriptor.copy())
    unpacked[list(bits)] ^= 1
    return np.packbits(unpacked)


@pytest.fixture
def flip_bits():
    """Bit-flipping helper for building descriptors at exact distances."""
    return flip


@pytest.fixture
def zero_descriptor():
    """A 512-bit descriptor with no bits set."""
    return np.zeros(N_BYTES, dtype=np.uint8)


@pytest.fixture
def random_descriptors():
    """60 random 512-bit descriptors (pairwise distances cluster near 256)."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 256, (60, N_BYTES), dtype=np.uint8)


@pytest.fixture
def other_descriptors():
    """A second, independent random descriptor set."""
    rng = np.random.RandomState(7)
    return rng.randint(0, 256, (45, N_BYTES), dtype=np.uint8)


@pytest.fixture
def tie_heavy_descriptors():
    """300 one-byte descriptors: only 9 possible distances, so ties everywhere."""
    rng = np.random.RandomState(3)
    return rng.randint(0, 256, (300, 1), dtype=np.uint8)


@pytest.fixture
def perturbed_pair(random_descriptors):
    """
    The random set and a shuffled, lightly corrupted copy of it.

    Returns (a, b, expected) where expected maps each index of a to the
    index of its corrupted copy in b.
    """
    rng = np.random.RandomState(11)
    perm = rng.permutation(len(random_descriptors))
    b = np.empty_like(random_descriptors)
    for new_pos, old_pos in enumerate(perm):
        bits = rng.choice(N_BYTES * 8, size=10, replace=False)
        b[new_pos] = flip(random_descriptors[old_pos], bits)
    expected = {int(old): new for new, old in enumerate(perm)}
    return random_descriptors, b, expected


@pytest.fixture
def line_descriptors(zero_descriptor):
    """
    Three descriptors on a line, X---Y-Z.

    dist(X, Y) = 10, dist(Y, Z) = 9, dist(X, Z) = 19.
    """
    x = zero_descriptor
    y = flip(x, range(0, 10))
    z = flip(y, range(10, 19))
    return x, y, z


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image (plenty of AKAZE corners)."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)
