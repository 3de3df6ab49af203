"""
Tests for EncodingConfig and FDEEncoder.
"""

import asyncio

import numpy as np
import pytest

from mvr.errors import ConfigurationError, EmptyInputError
from mvr.fde import (
    EncodingConfig,
    EncodingType,
    FDEEncoder,
    FillPolicy,
    ProjectionType,
    batch_similarities,
    similarity,
)
from mvr.rng import NumpyRandom


def test_output_dimension(small_config, encoder, rng):
    """Test FDE length is R * 2**P * D whatever the token count."""
    assert encoder.output_dimension == 3 * 8 * 16
    for n in (1, 5, 40):
        assert encoder.encode(rng.standard_normal((n, 16))).shape == (3 * 8 * 16,)


def test_output_dimension_with_ams(rng):
    """Test AMS projection replaces D with projection_dimension."""
    config = EncodingConfig(
        dimension=32,
        num_repetitions=2,
        num_simhash_projections=3,
        projection_type=ProjectionType.AMS_SKETCH,
        projection_dimension=8,
    )
    enc = FDEEncoder(config)
    fde = enc.encode_document(rng.standard_normal((6, 32)))
    assert fde.shape == (2 * 8 * 8,)
    assert config.fde_dimension == 128


def test_ams_matrices_have_one_sign_per_row():
    """Test each AMS matrix maps every input coordinate to one +/-1 entry."""
    config = EncodingConfig(
        dimension=20, num_repetitions=2, projection_type="ams_sketch", projection_dimension=5
    )
    enc = FDEEncoder(config)
    for ams in enc.ams_matrices:
        dense = ams.toarray()
        assert dense.shape == (20, 5)
        assert np.all(np.count_nonzero(dense, axis=1) == 1)
        assert set(np.unique(dense[dense != 0]).tolist()) <= {-1.0, 1.0}


def test_ams_seeds_are_offset_from_simhash_seeds():
    """Test each AMS matrix draws from its own stream, after the hyperplane seeds."""
    config = EncodingConfig(
        dimension=20,
        num_repetitions=3,
        projection_type="ams_sketch",
        projection_dimension=5,
        seed=11,
    )
    enc = FDEEncoder(config)
    for rep, ams in enumerate(enc.ams_matrices):
        _, cols = ams.toarray().nonzero()
        expected = NumpyRandom(11 + 3 + rep).integers(0, 5, 20)
        np.testing.assert_array_equal(cols, expected)


def test_encoding_is_deterministic(small_config, rng):
    """Test two encoders with equal configs produce bit-identical FDEs."""
    mv = rng.standard_normal((12, 16))
    a = FDEEncoder(small_config).encode_document(mv)
    b = FDEEncoder(small_config).encode_document(mv)
    np.testing.assert_array_equal(a, b)


def test_token_order_does_not_matter(encoder, rng):
    """Test a multi-vector is treated as a set."""
    mv = rng.standard_normal((9, 16))
    shuffled = mv[rng.permutation(9)]
    np.testing.assert_allclose(encoder.encode_query(mv), encoder.encode_query(shuffled), atol=1e-5)


def test_sum_is_n_times_average_for_identical_tokens(encoder, rng):
    """Test SUM of n copies of a vector equals n times its AVERAGE."""
    v = rng.standard_normal(16)
    for n in (1, 3, 7):
        mv = np.tile(v, (n, 1))
        np.testing.assert_allclose(
            encoder.encode(mv, EncodingType.SUM),
            n * encoder.encode(mv, EncodingType.AVERAGE),
            rtol=1e-5,
            atol=1e-6,
        )


def test_self_similarity_is_positive(encoder, rng):
    """Test a multi-vector's query FDE scores positively against its document FDE."""
    for _ in range(5):
        mv = rng.standard_normal((8, 16))
        assert similarity(encoder.encode_query(mv), encoder.encode_document(mv)) > 0


def test_single_token_lands_in_its_partition(small_config, encoder, rng):
    """Test a one-token query fills exactly the bucket SimHash assigns it."""
    v = rng.standard_normal(16).astype(np.float32)
    fde = encoder.encode_query(v[np.newaxis, :])
    blocks = fde.reshape(small_config.num_repetitions, small_config.num_partitions, 16)
    for rep in range(small_config.num_repetitions):
        pid = encoder.partitioner.partition_index(v, rep)
        np.testing.assert_allclose(blocks[rep, pid], v, rtol=1e-6)
        others = np.delete(blocks[rep], pid, axis=0)
        assert not others.any()


@pytest.mark.parametrize("policy", [FillPolicy.CENTROID, FillPolicy.NEAREST])
def test_fill_policies_fill_empty_document_buckets(policy, rng):
    """Test non-zero fill policies leave no empty bucket in a document FDE."""
    config = EncodingConfig(dimension=16, num_repetitions=2, num_simhash_projections=3, fill_policy=policy)
    enc = FDEEncoder(config)
    v = rng.standard_normal(16).astype(np.float32)
    blocks = enc.encode_document(v[np.newaxis, :]).reshape(2, 8, 16)
    # With one token both the centroid and the nearest token are the token.
    for rep in range(2):
        for pid in range(8):
            np.testing.assert_allclose(blocks[rep, pid], v, rtol=1e-6)


def test_fill_policy_does_not_touch_queries(rng):
    """Test SUM encodings keep empty buckets at zero under any fill policy."""
    config = EncodingConfig(dimension=16, num_repetitions=1, num_simhash_projections=3, fill_policy="centroid")
    enc = FDEEncoder(config)
    fde = enc.encode_query(rng.standard_normal((1, 16)))
    nonzero_buckets = np.count_nonzero(fde.reshape(8, 16).any(axis=1))
    assert nonzero_buckets == 1


def test_zero_tokens_raise_empty_input(encoder):
    """Test encoding an empty multi-vector raises EmptyInputError."""
    with pytest.raises(EmptyInputError):
        encoder.encode(np.zeros((0, 16)))
    with pytest.raises(EmptyInputError):
        encoder.encode([])


def test_wrong_token_dimension_raises(encoder, rng):
    """Test token dimension mismatch raises ConfigurationError."""
    with pytest.raises(ConfigurationError):
        encoder.encode(rng.standard_normal((3, 15)))


def test_ragged_tokens_raise(encoder):
    """Test tokens of different lengths raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        encoder.encode([[0.1] * 16, [0.2] * 8])


def test_similarity_length_mismatch():
    """Test similarity() refuses FDEs of different lengths."""
    with pytest.raises(ConfigurationError):
        similarity(np.ones(8), np.ones(9))
    assert similarity(np.ones(4), np.full(4, 0.5)) == pytest.approx(2.0)


def test_batch_similarities(encoder, rng):
    """Test batch_similarities matches per-row similarity()."""
    q = encoder.encode_query(rng.standard_normal((4, 16)))
    docs = encoder.encode_batch([rng.standard_normal((5, 16)) for _ in range(3)], EncodingType.AVERAGE)
    scores = batch_similarities(q, docs)
    for i in range(3):
        assert scores[i] == pytest.approx(similarity(q, docs[i]), rel=1e-4)


def test_encode_batch_matches_encode(encoder, rng):
    """Test batch encoding equals encoding one by one."""
    mvs = [rng.standard_normal((n, 16)) for n in (1, 4, 9, 2, 6) * 5]
    batch = encoder.encode_batch(mvs, EncodingType.AVERAGE)
    assert batch.shape == (25, encoder.output_dimension)
    for i, mv in enumerate(mvs):
        np.testing.assert_array_equal(batch[i], encoder.encode_document(mv))


def test_encode_batch_async_matches_sync(encoder, rng):
    """Test the cooperative batch encoder returns the same array."""
    mvs = [rng.standard_normal((3, 16)) for _ in range(23)]
    sync = encoder.encode_batch(mvs, EncodingType.SUM)
    result = asyncio.run(encoder.encode_batch_async(mvs, EncodingType.SUM, checkpoint_every=4))
    np.testing.assert_array_equal(sync, result)


def test_encode_batch_reports_empty_item(encoder, rng):
    """Test an empty multi-vector in a batch is reported with its position."""
    mvs = [rng.standard_normal((3, 16)), np.zeros((0, 16))]
    with pytest.raises(EmptyInputError, match="multi-vector 1"):
        encoder.encode_batch(mvs)


def test_config_accepts_strings():
    """Test enum fields accept their string values."""
    config = EncodingConfig(encoding_type="average", fill_policy="nearest")
    assert config.encoding_type is EncodingType.AVERAGE
    assert config.fill_policy is FillPolicy.NEAREST


@pytest.mark.parametrize(
    "kwargs",
    [
        {"dimension": 0},
        {"num_repetitions": 0},
        {"num_simhash_projections": 31},
        {"encoding_type": "median"},
        {"projection_type": "ams_sketch"},
        {"projection_type": "ams_sketch", "projection_dimension": 0},
    ],
)
def test_invalid_config(kwargs):
    """Test invalid EncodingConfig values raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        EncodingConfig(**kwargs)


def test_config_dict_round_trip():
    """Test to_dict/from_dict preserve the config."""
    config = EncodingConfig(
        dimension=32, projection_type="ams_sketch", projection_dimension=8, fill_policy="centroid"
    )
    assert EncodingConfig.from_dict(config.to_dict()) == config


def test_compression_stats(encoder):
    """Test compression_stats compares raw token floats to FDE floats."""
    stats = encoder.compression_stats(num_tokens=48)
    assert stats["original_floats"] == 48 * 16
    assert stats["fde_floats"] == encoder.output_dimension
    assert stats["compression_ratio"] == pytest.approx(48 * 16 / encoder.output_dimension)
