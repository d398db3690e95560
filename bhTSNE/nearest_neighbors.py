import logging

import numpy as np
from scipy.spatial.distance import cdist
from sklearn import neighbors

from bhTSNE import utils

log = logging.getLogger(__name__)


class KNNIndex:
    """A source of nearest neighbors.

    t-SNE never searches for neighbors itself; it only needs, for every point,
    the indices of and distances to its ``k`` nearest neighbors, excluding the
    point itself, ordered from the closest to the furthest.

    """

    VALID_METRICS = []

    def __init__(
        self,
        data,
        k,
        metric="euclidean",
        metric_params=None,
        n_jobs=1,
        verbose=False,
    ):
        self.data = data
        self.n_samples = data.shape[0]
        self.k = k
        self.metric = self.check_metric(metric)
        self.metric_params = metric_params
        self.n_jobs = n_jobs
        self.verbose = verbose

        self.index = None

    def build(self):
        """Build the nearest neighbor index on the training data.

        Builds an index on the training data and computes the nearest neighbors
        on the training data.

        Returns
        -------
        indices: np.ndarray
        distances: np.ndarray

        """
        raise NotImplementedError()

    def check_metric(self, metric):
        """Check that the metric is supported by the KNNIndex instance."""
        if callable(metric):
            pass
        elif metric not in self.VALID_METRICS:
            raise ValueError(
                f"`{self.__class__.__name__}` does not support the `{metric}` "
                f"metric. Please choose one of the supported metrics: "
                f"{', '.join(self.VALID_METRICS)}."
            )

        return metric


class Sklearn(KNNIndex):
    """Exact nearest neighbor search with scikit-learn."""

    VALID_METRICS = [
        "braycurtis",
        "canberra",
        "chebyshev",
        "cityblock",
        "euclidean",
        "hamming",
        "l1",
        "l2",
        "manhattan",
        "minkowski",
        "sqeuclidean",
    ] + ["cosine"]  # our own workaround implementation

    def build(self):
        data, k = self.data, self.k

        if k >= self.n_samples:
            raise ValueError(
                "Cannot find %d nearest neighbors among %d samples."
                % (k, self.n_samples)
            )

        timer = utils.Timer(
            f"Finding {k} nearest neighbors using exact search using "
            f"{self.metric} distance...",
            verbose=self.verbose,
        )
        timer.__enter__()

        if self.metric == "cosine":
            # The nearest neighbor ranking for cosine distance is the same as
            # for euclidean distance on normalized data
            effective_metric = "euclidean"
            effective_data = data / np.linalg.norm(data, axis=1)[:, None]
        else:
            effective_metric = self.metric
            effective_data = data

        self.index = neighbors.NearestNeighbors(
            algorithm="auto",
            metric=effective_metric,
            metric_params=self.metric_params,
            n_jobs=self.n_jobs,
        )
        self.index.fit(effective_data)

        # Return the nearest neighbors in the training set
        distances, indices = self.index.kneighbors(n_neighbors=k)

        # If using cosine distance, the computed distances will be wrong and
        # need to be recomputed
        if self.metric == "cosine":
            distances = np.vstack(
                [
                    cdist(np.atleast_2d(x), data[idx], metric="cosine")
                    for x, idx in zip(data, indices)
                ]
            )

        timer.__exit__()

        return indices, distances


class PrecomputedDistanceMatrix(KNNIndex):
    """Use a precomputed distance matrix to construct the KNNG.

    Parameters
    ----------
    distance_matrix: np.ndarray
        A square, symmetric matrix containing only non-negative values.

    k: int

    """

    def __init__(self, distance_matrix, k):
        distance_matrix = np.asarray(distance_matrix)
        if distance_matrix.ndim != 2 or distance_matrix.shape[0] != distance_matrix.shape[1]:
            raise ValueError("A precomputed distance matrix must be square.")
        nn = neighbors.NearestNeighbors(metric="precomputed")
        nn.fit(distance_matrix)
        self.distances, self.indices = nn.kneighbors(n_neighbors=k)
        self.n_samples = distance_matrix.shape[0]
        self.k = k

    def build(self):
        return self.indices, self.distances


class PrecomputedNeighbors(KNNIndex):
    """Use precomputed nearest neighbors.

    Parameters
    ----------
    neighbors: np.ndarray
        A N x K matrix containing the indices of point i's k nearest neighbors.

    distances: np.ndarray
        A N x K matrix containing the distances to from data point i to its k
        nearest neighbors.

    """

    def __init__(self, neighbors, distances):
        neighbors, distances = np.asarray(neighbors), np.asarray(distances)
        if neighbors.shape != distances.shape:
            raise ValueError(
                "Indices and distances should be of the same shape. Got %s and %s."
                % (neighbors.shape, distances.shape)
            )
        self.distances, self.indices = distances, neighbors
        self.n_samples = neighbors.shape[0]
        self.k = neighbors.shape[1]

    def build(self):
        return self.indices, self.distances


class PointwiseSearch(KNNIndex):
    """Collect nearest neighbors from a search function, one point at a time.

    Parameters
    ----------
    search: Callable[[int, int], Sequence[Tuple[int, float]]]
        Given a point index and ``k``, returns the ``k`` nearest neighbors of
        that point as ``(index, distance)`` pairs, closest first.

    n_samples: int

    k: int

    """

    def __init__(self, search, n_samples, k, verbose=False):
        if not callable(search):
            raise ValueError("`search` must be a callable object!")
        self.search = search
        self.n_samples = n_samples
        self.k = k
        self.verbose = verbose

    def build(self):
        indices = np.zeros((self.n_samples, self.k), dtype=np.int64)
        distances = np.zeros((self.n_samples, self.k), dtype=np.float64)

        with utils.Timer(f"Collecting {self.k} nearest neighbors...", self.verbose):
            for i in range(self.n_samples):
                result = list(self.search(i, self.k))
                if len(result) != self.k:
                    raise ValueError(
                        "The search returned %d neighbors for point %d, but %d "
                        "were requested." % (len(result), i, self.k)
                    )
                for j, (neighbor, distance) in enumerate(result):
                    indices[i, j] = neighbor
                    distances[i, j] = distance

        return indices, distances
