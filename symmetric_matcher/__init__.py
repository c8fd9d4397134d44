"""
symmetric_matcher — Mutual nearest-neighbor matching of binary descriptors.

Pairs keypoints between two images by Hamming distance on their binary
descriptors (AKAZE, ORB, BRISK), keeping only matches that are confident
in both directions.

Modules:
    descriptors  Descriptor set normalization + Hamming distance
    knn          Exact k-NN index (numpy linear scan, faiss binary flat)
    matching     One-directional margin test + symmetric matching
"""

__version__ = "1.0.0"
