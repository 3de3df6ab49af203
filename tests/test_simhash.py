"""
Tests for SimHash partitioning and the Gray-code helpers.
"""

import numpy as np
import pytest

from mvr.errors import ConfigurationError
from mvr.simhash import (
    SimHashPartitioner,
    binary_to_gray,
    gray_to_binary,
    hamming_distance,
)


def test_gray_round_trip():
    """Test gray_to_binary inverts binary_to_gray."""
    for code in range(256):
        assert gray_to_binary(binary_to_gray(code)) == code


def test_consecutive_gray_codes_differ_by_one_bit():
    """Test neighbouring integers map to Gray codes one bit apart."""
    for code in range(255):
        assert hamming_distance(binary_to_gray(code), binary_to_gray(code + 1)) == 1


def test_partition_ids_in_range(rng):
    """Test every partition id lies in [0, 2**P)."""
    part = SimHashPartitioner(dimension=24, num_repetitions=4, num_projections=5, seed=3)
    points = rng.standard_normal((500, 24))
    for rep in range(4):
        ids = part.partition_indices(points, rep)
        assert ids.shape == (500,)
        assert ids.min() >= 0
        assert ids.max() < 32


def test_partitioner_is_deterministic(rng):
    """Test identical arguments give identical hyperplanes and ids."""
    a = SimHashPartitioner(dimension=16, num_repetitions=3, num_projections=4, seed=11)
    b = SimHashPartitioner(dimension=16, num_repetitions=3, num_projections=4, seed=11)
    points = rng.standard_normal((50, 16))
    for rep in range(3):
        np.testing.assert_array_equal(a.matrices[rep], b.matrices[rep])
        np.testing.assert_array_equal(
            a.partition_indices(points, rep), b.partition_indices(points, rep)
        )


def test_repetitions_use_different_hyperplanes():
    """Test repetition r is seeded with seed + r."""
    part = SimHashPartitioner(dimension=16, num_repetitions=2, num_projections=4, seed=11)
    assert not np.allclose(part.matrices[0], part.matrices[1])


def test_zero_projections_single_partition(rng):
    """Test P == 0 puts everything in partition 0."""
    part = SimHashPartitioner(dimension=8, num_repetitions=2, num_projections=0, seed=1)
    ids = part.partition_indices(rng.standard_normal((20, 8)), 0)
    assert part.num_partitions == 1
    assert set(ids.tolist()) == {0}


def test_single_vector_matches_batch(rng):
    """Test partition_index agrees with the vectorized lookup."""
    part = SimHashPartitioner(dimension=16, num_repetitions=2, num_projections=4, seed=5)
    points = rng.standard_normal((10, 16))
    batch = part.partition_indices(points, 1)
    for i in range(10):
        assert part.partition_index(points[i], 1) == batch[i]


def _straddle(part, rng, repetition, plane, eps=1e-3):
    """Two points on opposite sides of one hyperplane and far from all others."""
    normal = part.hyperplane(repetition, plane).astype(np.float64)
    unit = normal / np.linalg.norm(normal)
    others = [j for j in range(part.num_projections) if j != plane]
    for _ in range(200):
        v = rng.standard_normal(part.dimension)
        base = v - np.dot(v, unit) * unit
        margins = [abs(np.dot(base, part.hyperplane(repetition, j))) for j in others]
        if not others or min(margins) > 0.5:
            return base + eps * unit, base - eps * unit
    raise AssertionError("no well-separated point found")


@pytest.mark.parametrize("plane", [0, 1, 2, 3])
def test_crossing_one_hyperplane_flips_one_sign_bit(rng, plane):
    """Test adjacent regions decode to sign codes one bit apart."""
    part = SimHashPartitioner(dimension=32, num_repetitions=1, num_projections=4, seed=9)
    above, below = _straddle(part, rng, 0, plane)
    id_above = part.partition_index(above, 0)
    id_below = part.partition_index(below, 0)
    assert gray_to_binary(id_above) ^ gray_to_binary(id_below) == 1 << plane


def test_crossing_first_hyperplane_flips_one_partition_bit(rng):
    """Test the partition ids themselves differ in one bit across plane 0."""
    part = SimHashPartitioner(dimension=32, num_repetitions=1, num_projections=4, seed=9)
    above, below = _straddle(part, rng, 0, 0)
    assert hamming_distance(part.partition_index(above, 0), part.partition_index(below, 0)) == 1


def test_dimension_mismatch_raises(rng):
    """Test vectors of the wrong dimension are rejected, not padded."""
    part = SimHashPartitioner(dimension=16, num_repetitions=1, num_projections=3, seed=1)
    with pytest.raises(ConfigurationError):
        part.partition_indices(rng.standard_normal((4, 15)), 0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"dimension": 0, "num_repetitions": 1, "num_projections": 2},
        {"dimension": 8, "num_repetitions": 0, "num_projections": 2},
        {"dimension": 8, "num_repetitions": 1, "num_projections": 31},
        {"dimension": 8, "num_repetitions": 1, "num_projections": -1},
    ],
)
def test_invalid_arguments(kwargs):
    """Test invalid partitioner arguments raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        SimHashPartitioner(seed=0, **kwargs)
