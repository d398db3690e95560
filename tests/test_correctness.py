import logging
import unittest
from functools import partial

import numpy as np
from sklearn import datasets
from sklearn.metrics import accuracy_score
from sklearn.model_selection import train_test_split
from sklearn.neighbors import KNeighborsClassifier, NearestCentroid

import bhTSNE
from bhTSNE import affinity, initialization
from bhTSNE.callbacks import ErrorApproximations

affinity.log.setLevel(logging.ERROR)

TSNE = partial(bhTSNE.TSNE, neighbors="exact", negative_gradient_method="bh")


class TestTSNECorrectness(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        random_state = np.random.RandomState(0)
        cls.x = np.vstack(
            (random_state.normal(+4, 1, (50, 50)), random_state.normal(-4, 1, (50, 50)))
        )
        cls.y = np.repeat([0, 1], 50)
        cls.iris = datasets.load_iris()

    def test_two_clusters_are_separated(self):
        tsne = TSNE(perplexity=10, theta=0.5, max_iter=1000, random_state=0)
        embedding = tsne.fit(self.x)

        self.assertEqual(embedding.shape, (100, 2))
        self.assertFalse(np.any(np.isnan(embedding)))

        classifier = NearestCentroid().fit(embedding, self.y)
        accuracy = accuracy_score(self.y, classifier.predict(embedding))
        self.assertGreaterEqual(accuracy, 0.95)

    def test_two_clusters_are_separated_in_parallel(self):
        tsne = TSNE(
            perplexity=10, max_iter=1000, n_jobs=2, initialization="random",
            random_state=0,
        )
        embedding = tsne.fit(self.x)

        classifier = NearestCentroid().fit(embedding, self.y)
        accuracy = accuracy_score(self.y, classifier.predict(embedding))
        self.assertGreaterEqual(accuracy, 0.95)

    def test_iris(self):
        x, y = self.iris.data, self.iris.target
        embedding = TSNE(perplexity=10, random_state=0).fit(x)

        x_train, x_test, y_train, y_test = train_test_split(
            embedding, y, test_size=0.25, random_state=42
        )
        knn = KNeighborsClassifier(n_neighbors=10)
        knn.fit(x_train, y_train)
        self.assertGreater(
            accuracy_score(knn.predict(x_test), y_test), 0.85,
            "Accuracy on iris data set was lower than expected",
        )

    def test_embedding_into_three_dimensions(self):
        embedding = TSNE(n_components=3, perplexity=10, random_state=0).fit(self.x)
        self.assertEqual(embedding.shape, (100, 3))

        classifier = NearestCentroid().fit(embedding, self.y)
        accuracy = accuracy_score(self.y, classifier.predict(embedding))
        self.assertGreaterEqual(accuracy, 0.95)

    def test_error_approximation_is_close_to_exact(self):
        tsne = TSNE(perplexity=10, max_iter=300, random_state=0)
        embedding, status = tsne.prepare_initial(self.x)

        callback = ErrorApproximations(status.P)
        tsne.set_params(callbacks=callback, callbacks_every_iters=50)
        tsne.run(status, embedding)

        differences = callback.report()
        self.assertEqual(len(differences), 6)
        np.testing.assert_allclose(callback.bh_errors, callback.exact_errors, rtol=0.05)


class TestDegenerateInputs(unittest.TestCase):
    def test_identical_points_do_not_produce_nans(self):
        n_samples = 40
        neighbors = np.array(
            [[(i + j) % n_samples for j in range(1, 10)] for i in range(n_samples)]
        )
        distances = np.zeros((n_samples, 9))

        tsne = TSNE(max_iter=300)
        status = tsne.initialize(neighbors, distances)
        embedding = np.zeros((n_samples, 2))
        tsne.run(status, embedding)

        self.assertTrue(status.tree.is_truncated())
        self.assertLessEqual(status.tree.depth(), tsne.max_depth)
        self.assertFalse(np.any(np.isnan(embedding)))
        np.testing.assert_allclose(embedding, 0)

    def test_identical_data_points(self):
        x = np.ones((50, 5))
        embedding = TSNE(perplexity=5, initialization="random", max_iter=100).fit(x)
        self.assertFalse(np.any(np.isnan(embedding)))

    def test_random_initialization_is_reproducible(self):
        x = np.random.RandomState(1).normal(0, 1, (40, 3))
        tsne = TSNE(perplexity=5, initialization="random", max_iter=50, random_state=3)
        np.testing.assert_array_equal(tsne.fit(x), tsne.fit(x))

    def test_precomputed_initialization_is_copied(self):
        x = np.random.RandomState(1).normal(0, 1, (40, 3))
        init = initialization.random(x, random_state=0)
        before = init.copy()
        TSNE(perplexity=5, initialization=init, max_iter=50).fit(x)
        np.testing.assert_array_equal(init, before)
