"""
Tests for k-means and the product quantizer.
"""

import asyncio

import numpy as np
import pytest

from mvr.errors import ConfigurationError, EmptyInputError, UninitializedStateError
from mvr.quantization import (
    INIT_ROWS_PER_STEP,
    KMeans,
    PQConfig,
    ProductQuantizer,
    nearest_centroids,
)
from mvr.rng import LinearCongruentialRandom


@pytest.fixture
def training_fdes(rng):
    return rng.standard_normal((120, 96)).astype(np.float32) * 0.5


@pytest.fixture
def trained(training_fdes):
    return ProductQuantizer(PQConfig(num_subvectors=6, codebook_size=16)).train(training_fdes)


def test_eight_bytes_per_document(rng):
    """Test 8 x 256 codebooks compress a 1024-dim FDE to 8 bytes."""
    fdes = rng.standard_normal((500, 1024)).astype(np.float32)
    pq = ProductQuantizer(PQConfig(num_subvectors=8, codebook_size=256)).train(fdes)

    codes = pq.encode(fdes[0])
    assert codes.shape == (8,)
    assert codes.dtype == np.uint8
    assert pq.decode(codes).shape == (1024,)

    stats = pq.compression_stats(num_documents=500)
    assert stats.compressed_bytes == 8
    assert stats.original_bytes == 1024 * 4
    assert stats.compression_ratio == pytest.approx(512.0)
    assert stats.codebook_bytes == 8 * 256 * 128 * 4
    assert stats.amortized_ratio == pytest.approx(500 * 4096 / (500 * 8 + stats.codebook_bytes))


def test_iterations_capped(trained):
    """Test k-means never runs more than max_iterations."""
    assert len(trained.iterations) == 6
    assert all(1 <= n <= 50 for n in trained.iterations)


def test_reconstruction_within_training_bound(trained, training_fdes):
    """Test every training FDE decodes within the recorded error bound."""
    bound = trained.reconstruction_bound
    codes = trained.encode_batch(training_fdes)
    decoded = trained.decode_batch(codes)
    errors = np.linalg.norm(training_fdes - decoded, axis=1)
    assert np.all(errors <= bound * (1 + 1e-4) + 1e-5)


def test_decode_truncates_padding(rng):
    """Test a dimension not divisible by M is padded for training and trimmed on decode."""
    fdes = rng.standard_normal((30, 10)).astype(np.float32)
    pq = ProductQuantizer(PQConfig(num_subvectors=3, codebook_size=4)).train(fdes)
    assert pq.subvector_dim == 4
    assert pq.decode(pq.encode(fdes[0])).shape == (10,)


def test_codes_fit_codebook(trained, training_fdes):
    """Test every code indexes a real centroid."""
    codes = trained.encode_batch(training_fdes)
    assert codes.shape == (120, 6)
    assert codes.max() < 16


def test_quantized_similarity(trained, training_fdes):
    """Test quantized_similarity scores against the decoded document."""
    q = training_fdes[1]
    codes = trained.encode(training_fdes[2])
    expected = float(np.dot(q, trained.decode(codes)))
    assert trained.quantized_similarity(q, codes) == pytest.approx(expected, rel=1e-5)


def test_untrained_quantizer_raises(training_fdes):
    """Test encode/decode before train raise UninitializedStateError."""
    pq = ProductQuantizer()
    with pytest.raises(UninitializedStateError):
        pq.encode(training_fdes[0])
    with pytest.raises(UninitializedStateError):
        pq.decode(np.zeros(8, dtype=np.uint8))
    with pytest.raises(UninitializedStateError):
        pq.compression_stats()


def test_codebook_size_limit():
    """Test more than 256 centroids is rejected."""
    with pytest.raises(ConfigurationError):
        PQConfig(codebook_size=257)
    with pytest.raises(ConfigurationError):
        PQConfig(num_subvectors=0)


def test_train_on_nothing_raises():
    """Test training on zero FDEs raises EmptyInputError."""
    with pytest.raises(EmptyInputError):
        ProductQuantizer().train(np.zeros((0, 32), dtype=np.float32))


def test_dimension_mismatch_after_training(trained, rng):
    """Test encoding an FDE of another length raises ConfigurationError."""
    with pytest.raises(ConfigurationError):
        trained.encode(rng.standard_normal(95))


def test_retraining_replaces_codebooks(trained, rng):
    """Test train() swaps in a whole new set of codebooks."""
    old = [c.copy() for c in trained.codebooks]
    trained.train(rng.standard_normal((40, 48)).astype(np.float32))
    assert trained.dimension == 48
    assert trained.subvector_dim == 8
    assert all(c.shape == (16, 8) for c in trained.codebooks)
    assert old[0].shape != trained.codebooks[0].shape


def test_training_is_deterministic(training_fdes):
    """Test equal configs trained on equal data give equal codebooks."""
    a = ProductQuantizer(PQConfig(num_subvectors=6, codebook_size=16)).train(training_fdes)
    b = ProductQuantizer(PQConfig(num_subvectors=6, codebook_size=16)).train(training_fdes)
    for ca, cb in zip(a.codebooks, b.codebooks):
        np.testing.assert_array_equal(ca, cb)


def test_train_async_matches_sync(trained, training_fdes):
    """Test the cooperative trainer produces the same codebooks."""
    pq = ProductQuantizer(PQConfig(num_subvectors=6, codebook_size=16))
    asyncio.run(pq.train_async(training_fdes))
    for ca, cb in zip(pq.codebooks, trained.codebooks):
        np.testing.assert_array_equal(ca, cb)


def test_kmeans_empty_clusters_keep_initial_centroid():
    """Test centroids that receive no points stay where they started."""
    data = np.tile(np.array([[0.9, 0.9, 0.9]], dtype=np.float32), (10, 1))
    initial = LinearCongruentialRandom(5).uniform(-1.0, 1.0, (4, 3)).astype(np.float32)

    km = KMeans(4, rng=LinearCongruentialRandom(5), max_iterations=50)
    centroids = km.fit(data)

    assert km.converged
    used = int(km.labels[0])
    assert set(km.labels.tolist()) == {used}
    np.testing.assert_allclose(centroids[used], data[0], rtol=1e-6)
    for c in range(4):
        if c != used:
            np.testing.assert_array_equal(centroids[c], initial[c])


def test_kmeans_predict_requires_fit():
    """Test predict before fit raises UninitializedStateError."""
    with pytest.raises(UninitializedStateError):
        KMeans(2, rng=LinearCongruentialRandom(1)).predict(np.zeros((1, 2)))


def test_nearest_centroids():
    """Test nearest_centroids returns labels and squared distances."""
    centroids = np.array([[0.0, 0.0], [10.0, 0.0]], dtype=np.float32)
    points = np.array([[1.0, 0.0], [9.0, 1.0]], dtype=np.float32)
    labels, sq = nearest_centroids(points, centroids)
    assert labels.tolist() == [0, 1]
    np.testing.assert_allclose(sq, [1.0, 2.0], rtol=1e-6)


def test_lcg_sequence():
    """Test the LCG follows the 1664525 / 1013904223 recurrence."""
    lcg = LinearCongruentialRandom(1)
    first = (1664525 * 1 + 1013904223) % 2**32
    second = (1664525 * first + 1013904223) % 2**32
    assert lcg.next_float() == pytest.approx(first / 2**32)
    assert lcg.next_float() == pytest.approx(second / 2**32)


def test_lcg_block_draws_match_scalar_sequence():
    """Test vectorized uniforms reproduce next_float() exactly, across block boundaries."""
    fast = LinearCongruentialRandom(7)
    slow = LinearCongruentialRandom(7)
    count = LinearCongruentialRandom.BLOCK + 904
    drawn = fast.uniform(0.0, 1.0, count)
    expected = np.array([slow.next_float() for _ in range(count)])
    np.testing.assert_array_equal(drawn, expected)
    assert fast.next_float() == slow.next_float()


class RecordingLCG(LinearCongruentialRandom):
    def __init__(self, seed):
        super().__init__(seed)
        self.shapes = []

    def uniform(self, low, high, size):
        self.shapes.append(size)
        return super().uniform(low, high, size)


def test_train_steps_yield_during_initialization(rng):
    """Test training pauses between centroid-initialization chunks."""
    created = []

    def factory(seed):
        created.append(RecordingLCG(seed))
        return created[-1]

    fdes = rng.standard_normal((40, 64)).astype(np.float32)
    pq = ProductQuantizer(PQConfig(num_subvectors=2, codebook_size=100), rng_factory=factory)
    steps = pq.train_steps(fdes)

    next(steps)
    assert len(created) == 1
    assert created[0].shapes == [(INIT_ROWS_PER_STEP, 32)]

    for _ in steps:
        pass
    assert pq.is_trained
    assert [sum(s[0] for s in r.shapes) for r in created] == [100, 100]


def test_chunked_initialization_keeps_the_draw_order():
    """Test drawing centroids in chunks gives the same start as one draw."""
    data = np.tile(np.array([[5.0, 5.0]], dtype=np.float32), (3, 1))
    km = KMeans(70, rng=LinearCongruentialRandom(9), max_iterations=1)
    centroids = km.fit(data)
    initial = LinearCongruentialRandom(9).uniform(-1.0, 1.0, (70, 2)).astype(np.float32)
    moved = int(km.labels[0])
    keep = np.arange(70) != moved
    np.testing.assert_array_equal(centroids[keep], initial[keep])


def test_decode_rejects_out_of_range_codes(trained):
    """Test codes outside [0, codebook_size) raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        trained.decode(np.full(6, 16, dtype=np.int64))
    with pytest.raises(ConfigurationError):
        trained.decode(np.array([0, 1, 2, 3, 4, -1]))
