import logging
import unittest
from functools import partial

import numpy as np
import scipy.sparse as sp
from scipy.spatial.distance import pdist, squareform

from bhTSNE import _tsne, affinity, nearest_neighbors

affinity.log.setLevel(logging.ERROR)

PerplexityBasedNN = partial(affinity.PerplexityBasedNN, method="exact")


def exact_neighbors(x, k):
    distances = squareform(pdist(x))
    np.fill_diagonal(distances, np.inf)
    neighbors = np.argsort(distances, axis=1)[:, :k]
    return neighbors, np.take_along_axis(distances, neighbors, axis=1)


def entropy(p):
    p = p[p > 0]
    return -np.sum(p * np.log(p))


class TestGaussianPerplexity(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(0)
        cls.x = random_state.normal(0, 1, (150, 5))
        cls.neighbors, cls.distances = exact_neighbors(cls.x, 30)

    def test_rows_are_normalized(self):
        P = _tsne.compute_gaussian_perplexity(self.distances)
        np.testing.assert_allclose(np.sum(P, axis=1), 1)
        self.assertTrue(np.all(P >= 0))

    def test_matches_target_perplexity(self):
        P, betas, n_steps = _tsne.compute_gaussian_perplexity(
            self.distances, return_betas=True
        )
        perplexities = np.exp([entropy(row) for row in P])
        np.testing.assert_allclose(perplexities, 10, rtol=1e-4)
        self.assertTrue(np.all(betas > 0))
        self.assertTrue(np.all(n_steps <= _tsne.PERPLEXITY_MAX_ITER))

    def test_explicit_perplexity(self):
        P = _tsne.compute_gaussian_perplexity(self.distances, perplexity=5)
        perplexities = np.exp([entropy(row) for row in P])
        np.testing.assert_allclose(perplexities, 5, rtol=1e-4)

    def test_closer_neighbors_get_larger_probabilities(self):
        P = _tsne.compute_gaussian_perplexity(self.distances)
        # Neighbors are sorted by distance, so the rows must not increase
        self.assertTrue(np.all(np.diff(P, axis=1) <= 1e-12))

    def test_warm_start_converges_immediately(self):
        P1, betas, _ = _tsne.compute_gaussian_perplexity(
            self.distances, return_betas=True
        )
        P2, betas2, n_steps = _tsne.compute_gaussian_perplexity(
            self.distances, initial_betas=betas, return_betas=True
        )
        np.testing.assert_array_equal(n_steps, 1)
        np.testing.assert_array_equal(betas, betas2)
        np.testing.assert_allclose(P1, P2)

    def test_identical_distances_give_uniform_rows(self):
        distances = np.ones((10, 6))
        P = _tsne.compute_gaussian_perplexity(distances)
        np.testing.assert_allclose(P, 1 / 6)
        self.assertFalse(np.any(np.isnan(P)))

    def test_large_distances_do_not_underflow(self):
        distances = self.distances + 1e4
        P = _tsne.compute_gaussian_perplexity(distances)
        self.assertFalse(np.any(np.isnan(P)))
        np.testing.assert_allclose(np.sum(P, axis=1), 1)

    def test_parallel_matches_serial(self):
        P1, betas1, _ = _tsne.compute_gaussian_perplexity(
            self.distances, num_threads=1, return_betas=True
        )
        P2, betas2, _ = _tsne.compute_gaussian_perplexity(
            self.distances, num_threads=4, return_betas=True
        )
        np.testing.assert_array_equal(P1, P2)
        np.testing.assert_array_equal(betas1, betas2)


class TestSymmetrization(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(1)
        cls.x = random_state.normal(0, 1, (80, 3))
        cls.neighbors, cls.distances = exact_neighbors(cls.x, 9)
        cls.conditional_P = _tsne.compute_gaussian_perplexity(cls.distances)

    def reference(self):
        n_samples, k_neighbors = self.neighbors.shape
        P = sp.csr_matrix(
            (
                self.conditional_P.ravel(),
                self.neighbors.ravel(),
                range(0, n_samples * k_neighbors + 1, k_neighbors),
            ),
            shape=(n_samples, n_samples),
        ).toarray()
        P = P + P.T
        return P / np.sum(P)

    def test_nn_symmetrization_matches_reference(self):
        P = affinity.symmetrize_nn(self.neighbors, self.conditional_P)
        np.testing.assert_allclose(P.toarray(), self.reference(), atol=1e-15)

    def test_matrix_symmetrization_matches_reference(self):
        n_samples, k_neighbors = self.neighbors.shape
        P = sp.csr_matrix(
            (
                self.conditional_P.ravel(),
                self.neighbors.ravel(),
                range(0, n_samples * k_neighbors + 1, k_neighbors),
            ),
            shape=(n_samples, n_samples),
        )
        P = affinity.symmetrize_matrix(P)
        np.testing.assert_allclose(P.toarray(), self.reference(), atol=1e-15)

    def test_both_symmetrizations_agree(self):
        P1 = affinity.symmetrize_nn(self.neighbors, self.conditional_P)
        P2 = affinity.symmetrize_matrix(
            affinity.joint_probabilities_nn(
                self.neighbors, self.distances, symmetrize=False
            )
        )
        np.testing.assert_array_equal(P1.indptr, P2.indptr)
        np.testing.assert_array_equal(P1.indices, P2.indices)
        np.testing.assert_allclose(P1.data, P2.data)

    def test_symmetric_and_normalized(self):
        P = affinity.joint_probabilities_nn(self.neighbors, self.distances)
        np.testing.assert_allclose((P - P.T).toarray(), 0, atol=1e-16)
        self.assertAlmostEqual(P.sum(), 1)
        self.assertTrue(P.has_sorted_indices)
        # No point is its own neighbor
        self.assertEqual(np.count_nonzero(P.diagonal()), 0)

    def test_mutual_neighbors_are_not_duplicated(self):
        neighbors = np.array([[1], [0], [1]])
        P = affinity.symmetrize_nn(neighbors, np.ones((3, 1)))
        np.testing.assert_allclose(
            P.toarray(),
            np.array([[0, 2, 0], [2, 0, 1], [0, 1, 0]]) / 6,
        )

    def test_input_is_not_modified(self):
        conditional_P = self.conditional_P.copy()
        affinity.symmetrize_nn(self.neighbors, conditional_P)
        np.testing.assert_array_equal(conditional_P, self.conditional_P)


class TestJointProbabilities(unittest.TestCase):
    def test_unsymmetrized_rows_sum_to_one(self):
        random_state = np.random.RandomState(2)
        neighbors, distances = exact_neighbors(random_state.normal(0, 1, (40, 2)), 6)
        P = affinity.joint_probabilities_nn(neighbors, distances, symmetrize=False)
        np.testing.assert_allclose(np.asarray(P.sum(axis=1)).ravel(), 1)

    def test_returns_betas(self):
        random_state = np.random.RandomState(2)
        neighbors, distances = exact_neighbors(random_state.normal(0, 1, (40, 2)), 6)
        P, betas = affinity.joint_probabilities_nn(
            neighbors, distances, return_betas=True
        )
        self.assertEqual(betas.shape, (40,))

    def test_invalid_neighbors_raise_error(self):
        neighbors = np.array([[1, 2], [0, 2], [0, 1]])
        distances = np.ones((3, 2))

        with self.assertRaises(ValueError):
            affinity.joint_probabilities_nn(neighbors[:, :1], distances)
        with self.assertRaises(ValueError):
            # As many neighbors as points
            affinity.joint_probabilities_nn(
                np.array([[1, 2, 0]] * 3), np.ones((3, 3))
            )
        with self.assertRaises(ValueError):
            affinity.joint_probabilities_nn(neighbors + 1, distances)
        with self.assertRaises(ValueError):
            affinity.joint_probabilities_nn(neighbors.astype(float), distances)
        with self.assertRaises(ValueError):
            # Point 0 lists itself
            affinity.joint_probabilities_nn(
                np.array([[0, 2], [0, 2], [0, 1]]), distances
            )
        with self.assertRaises(ValueError):
            affinity.joint_probabilities_nn(
                neighbors, np.array([[1, np.nan], [1, 1], [1, 1]])
            )

    def test_self_neighbors_raise_error(self):
        # Every row starts with the point itself
        n_samples = 20
        neighbors = np.array(
            [[(i + j) % n_samples for j in range(4)] for i in range(n_samples)]
        )
        distances = np.tile(np.arange(4, dtype=np.float64), (n_samples, 1))

        with self.assertRaises(ValueError):
            affinity.joint_probabilities_nn(neighbors, distances)

        def search(i, k):
            return list(zip(neighbors[i, :k], distances[i, :k]))

        knn_index = nearest_neighbors.PointwiseSearch(search, n_samples, 4)
        with self.assertRaises(ValueError):
            affinity.PerplexityBasedNN(knn_index=knn_index)

        # Dropping the point itself leaves a valid graph summing to 1
        P = affinity.joint_probabilities_nn(neighbors[:, 1:], distances[:, 1:])
        self.assertAlmostEqual(P.sum(), 1)
        self.assertEqual(np.count_nonzero(P.diagonal()), 0)


class TestPerplexityBased(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.x = np.random.RandomState(42).normal(100, 50, (91, 4))

    def test_effective_perplexity(self):
        aff = PerplexityBasedNN(self.x, perplexity=10)
        self.assertEqual(aff.perplexity, 10)
        self.assertEqual(aff.effective_perplexity_, 10)
        self.assertEqual(aff.neighbors.shape, (91, 30))
        self.assertEqual(aff.betas_.shape, (91,))

    def test_fractional_perplexity_rounds_neighbors_up(self):
        aff = PerplexityBasedNN(self.x, perplexity=2.5)
        self.assertEqual(aff.neighbors.shape[1], 8)
        self.assertAlmostEqual(aff.effective_perplexity_, 8 / 3)

    def test_too_large_perplexity_raises_error(self):
        with self.assertRaises(ValueError):
            PerplexityBasedNN(self.x, perplexity=31)
        with self.assertRaises(ValueError):
            PerplexityBasedNN(self.x, perplexity=0)

    def test_accepts_knn_index(self):
        neighbors, distances = exact_neighbors(self.x, 15)
        knn_index = nearest_neighbors.PrecomputedNeighbors(neighbors, distances)
        aff = affinity.PerplexityBasedNN(knn_index=knn_index)
        self.assertEqual(aff.effective_perplexity_, 5)

        expected = affinity.joint_probabilities_nn(neighbors, distances)
        np.testing.assert_allclose(aff.P.toarray(), expected.toarray())

    def test_requires_data_or_index(self):
        with self.assertRaises(ValueError):
            affinity.PerplexityBasedNN()

    def test_precomputed_distance_matrix(self):
        distances = squareform(pdist(self.x))
        aff1 = PerplexityBasedNN(distances, perplexity=5, metric="precomputed")
        aff2 = PerplexityBasedNN(self.x, perplexity=5)
        np.testing.assert_allclose(aff1.P.toarray(), aff2.P.toarray())

    def test_unknown_method_raises_error(self):
        with self.assertRaises(ValueError):
            affinity.PerplexityBasedNN(self.x, perplexity=5, method="annoy")

    def test_matrix_is_symmetric(self):
        aff = PerplexityBasedNN(self.x, perplexity=5)
        np.testing.assert_allclose((aff.P - aff.P.T).toarray(), 0, atol=1e-16)
        self.assertAlmostEqual(aff.P.sum(), 1)
