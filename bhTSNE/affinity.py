import logging

import numba
import numpy as np
import scipy.sparse as sp

from bhTSNE import _tsne
from bhTSNE import nearest_neighbors
from bhTSNE import utils

log = logging.getLogger(__name__)


class Affinities:
    """Compute the affinities between samples.

    t-SNE takes as input an affinity matrix :math:`P`, and does not really care
    about anything else from the data. This means we can use t-SNE for any data
    where we are able to express interactions between samples with an affinity
    matrix.

    Attributes
    ----------
    P: sp.csr_matrix
        The :math:`N \\times N` affinity matrix expressing interactions between
        :math:`N` data samples. Column indices are sorted within every row.

    verbose: bool

    """

    def __init__(self, verbose=False):
        self.P = None
        self.verbose = verbose
        self.knn_index: nearest_neighbors.KNNIndex = None


class PerplexityBasedNN(Affinities):
    """Compute affinities using nearest neighbors.

    The number of neighbors is three times the perplexity, rounded up, and the
    perplexity each point is calibrated to is a third of the number of
    neighbors.

    Parameters
    ----------
    data: np.ndarray
        The data matrix.

    perplexity: float
        Perplexity can be thought of as the continuous :math:`k` number of
        nearest neighbors, for which t-SNE will attempt to preserve distances.

    method: str
        Specifies the nearest neighbor method to use. Only ``exact`` search is
        available, or pass a :class:`nearest_neighbors.KNNIndex` instance.

    metric: Union[str, Callable]
        The metric to be used to compute affinities between points in the
        original space.

    metric_params: dict
        Additional keyword arguments for the metric function.

    symmetrize: bool
        Symmetrize affinity matrix. Standard t-SNE symmetrizes the interactions.

    n_jobs: int
        The number of threads to use. This follows the scikit-learn
        convention, ``-1`` meaning all processors, ``-2`` meaning all but one,
        etc.

    verbose: bool

    knn_index: Optional[nearest_neighbors.KNNIndex]
        Optionally, a precomputed index. This option will ignore any
        KNN-related parameters and the perplexity is taken from the index's
        number of neighbors. When ``knn_index`` is specified, ``data`` must be
        set to None.

    """

    def __init__(
        self,
        data=None,
        perplexity=30,
        method="exact",
        metric="euclidean",
        metric_params=None,
        symmetrize=True,
        n_jobs=1,
        verbose=False,
        knn_index=None,
    ):
        super().__init__(verbose=verbose)
        # This can't work if neither data nor the knn index are specified
        if data is None and knn_index is None:
            raise ValueError(
                "At least one of the parameters `data` or `knn_index` must be specified!"
            )
        # This can't work if both data and the knn index are specified
        if data is not None and knn_index is not None:
            raise ValueError(
                "Both `data` or `knn_index` were specified! Please pass only one."
            )

        n_jobs = utils.effective_n_jobs(n_jobs)

        if knn_index is None:
            k_neighbors = neighbors_for_perplexity(perplexity, data.shape[0])
            self.knn_index = get_knn_index(
                data, method, k_neighbors, metric, metric_params, n_jobs, verbose
            )
        else:
            self.knn_index = knn_index
            log.info("KNN index provided. Ignoring KNN-related parameters.")

        self.perplexity = perplexity
        self.__neighbors, self.__distances = self.knn_index.build()
        self.effective_perplexity_ = self.__neighbors.shape[1] / 3

        with utils.Timer("Calculating affinity matrix...", verbose):
            self.P, self.betas_ = joint_probabilities_nn(
                self.__neighbors,
                self.__distances,
                symmetrize=symmetrize,
                n_jobs=n_jobs,
                return_betas=True,
            )

        self.symmetrize = symmetrize
        self.n_jobs = n_jobs

    @property
    def neighbors(self):
        return self.__neighbors

    @property
    def distances(self):
        return self.__distances


def neighbors_for_perplexity(perplexity, n_samples):
    """Determine the number of nearest neighbors needed for a perplexity."""
    if perplexity <= 0:
        raise ValueError("Perplexity must be > 0. %.2f given" % perplexity)

    k_neighbors = int(np.ceil(3 * perplexity))
    if k_neighbors >= n_samples:
        raise ValueError(
            "Perplexity %.2f requires %d nearest neighbors, but there are only "
            "%d samples. The number of samples must be greater than three times "
            "the perplexity." % (perplexity, k_neighbors, n_samples)
        )
    return k_neighbors


def get_knn_index(
    data, method, k, metric, metric_params=None, n_jobs=1, verbose=False
):
    if metric == "precomputed":
        return nearest_neighbors.PrecomputedDistanceMatrix(data, k=k)

    methods = {
        "exact": nearest_neighbors.Sklearn,
        "auto": nearest_neighbors.Sklearn,
    }
    if isinstance(method, nearest_neighbors.KNNIndex):
        knn_index = method

    elif method not in methods:
        raise ValueError(
            "Unrecognized nearest neighbor algorithm `%s`. Please choose one "
            "of the supported methods or provide a valid `KNNIndex` instance." % method
        )
    else:
        knn_index = methods[method](
            data=data,
            k=k,
            metric=metric,
            metric_params=metric_params,
            n_jobs=n_jobs,
            verbose=verbose,
        )

    return knn_index


def check_neighbors(neighbors, distances):
    """Validate nearest neighbor arrays, returning them as numpy arrays.

    Raises
    ------
    ValueError
        If the shapes of the index and distance arrays disagree, if any point
        has as many neighbors as there are points, if any neighbor index is
        out of range or if a point is listed among its own neighbors.

    """
    neighbors = np.asarray(neighbors)
    distances = np.asarray(distances, dtype=np.float64)

    if neighbors.ndim != 2 or distances.ndim != 2:
        raise ValueError(
            "`neighbors` and `distances` must be two-dimensional arrays with "
            "one row per point."
        )
    if neighbors.shape != distances.shape:
        raise ValueError(
            "`neighbors` and `distances` should be of the same shape. Got %s and "
            "%s." % (neighbors.shape, distances.shape)
        )
    if not np.issubdtype(neighbors.dtype, np.integer):
        raise ValueError("`neighbors` must contain integer indices.")

    n_samples, k_neighbors = neighbors.shape
    if k_neighbors < 1:
        raise ValueError("Every point needs at least one nearest neighbor.")
    if k_neighbors >= n_samples:
        raise ValueError(
            "The number of nearest neighbors (%d) must be smaller than the number "
            "of points (%d)." % (k_neighbors, n_samples)
        )
    if np.any(neighbors < 0) or np.any(neighbors >= n_samples):
        raise ValueError(
            "Neighbor indices must lie in the range [0, %d)." % n_samples
        )
    if np.any(neighbors == np.arange(n_samples)[:, np.newaxis]):
        raise ValueError("A point must not be listed among its own neighbors.")
    if not np.all(np.isfinite(distances)):
        raise ValueError("`distances` must contain only finite values.")

    return np.ascontiguousarray(neighbors, dtype=np.int64), distances


def joint_probabilities_nn(
    neighbors,
    distances,
    perplexity=None,
    symmetrize=True,
    n_jobs=1,
    return_betas=False,
):
    """Compute the joint probability matrix :math:`P` from nearest neighbors.

    Parameters
    ----------
    neighbors: np.ndarray
        A ``n_samples * k_neighbors`` matrix containing the indices to each
        point's nearest neighbors.

    distances: np.ndarray
        A ``n_samples * k_neighbors`` matrix containing the distances to the
        neighbors at indices defined in the neighbors parameter.

    perplexity: float
        The desired perplexity of the conditional distributions. Defaults to a
        third of the number of neighbors.

    symmetrize: bool
        Whether to symmetrize the probability matrix or not. If not, the rows
        of the returned matrix are the individually normalized conditional
        distributions.

    n_jobs: int
        Number of threads.

    return_betas: bool
        Also return the precision found for each point.

    Returns
    -------
    sp.csr_matrix
        A ``n_samples * n_samples`` matrix with sorted column indices in every
        row. When symmetrized, the matrix is symmetric and sums to 1.

    """
    neighbors, distances = check_neighbors(neighbors, distances)
    n_samples, k_neighbors = neighbors.shape

    conditional_P, betas, _ = _tsne.compute_gaussian_perplexity(
        distances,
        perplexity=perplexity,
        num_threads=n_jobs,
        return_betas=True,
    )

    if symmetrize:
        P = symmetrize_nn(neighbors, conditional_P)
    else:
        P = sp.csr_matrix(
            (
                conditional_P.ravel(),
                neighbors.ravel(),
                range(0, n_samples * k_neighbors + 1, k_neighbors),
            ),
            shape=(n_samples, n_samples),
        )
        P.sort_indices()

    if return_betas:
        return P, betas
    return P


@numba.njit(nogil=True)
def _symmetrize_nn(neighbors, P):
    n_samples, k_neighbors = neighbors.shape
    one_sided = np.zeros((n_samples, k_neighbors), dtype=np.bool_)
    n_added = np.zeros(n_samples, dtype=np.int64)

    for i in range(n_samples):
        for k1 in range(k_neighbors):
            j = neighbors[i, k1]
            present = False
            for k2 in range(k_neighbors):
                if neighbors[j, k2] == i:
                    # The reverse edge gets summed once, from the lower index
                    if i < j:
                        combined = P[i, k1] + P[j, k2]
                        P[i, k1] = combined
                        P[j, k2] = combined
                    present = True
                    break
            if not present:
                one_sided[i, k1] = True
                n_added[j] += 1

    indptr = np.zeros(n_samples + 1, dtype=np.int64)
    for i in range(n_samples):
        indptr[i + 1] = indptr[i] + k_neighbors + n_added[i]
    indices = np.empty(indptr[n_samples], dtype=np.int64)
    data = np.empty(indptr[n_samples], dtype=np.float64)

    fill = np.empty(n_samples, dtype=np.int64)
    for i in range(n_samples):
        for k in range(k_neighbors):
            indices[indptr[i] + k] = neighbors[i, k]
            data[indptr[i] + k] = P[i, k]
        fill[i] = indptr[i] + k_neighbors

    for i in range(n_samples):
        for k in range(k_neighbors):
            if one_sided[i, k]:
                j = neighbors[i, k]
                indices[fill[j]] = i
                data[fill[j]] = P[i, k]
                fill[j] += 1

    return indptr, indices, data


def symmetrize_nn(neighbors, P):
    """Symmetrize conditional probabilities given on a kNN graph.

    Every edge :math:`i \\to j` is looked up in the neighbor list of :math:`j`.
    Edges present in both directions get the sum of both probabilities, edges
    present in one direction are added in reverse with the same probability.
    Finally, everything is divided by twice the total, so the matrix sums to 1.

    Parameters
    ----------
    neighbors: np.ndarray
        A ``n_samples * k_neighbors`` matrix of neighbor indices.

    P: np.ndarray
        A ``n_samples * k_neighbors`` matrix of conditional probabilities.

    Returns
    -------
    sp.csr_matrix

    """
    neighbors = np.ascontiguousarray(neighbors, dtype=np.int64)
    P = np.array(P, dtype=np.float64, copy=True)
    n_samples = neighbors.shape[0]
    total = np.sum(P)

    indptr, indices, data = _symmetrize_nn(neighbors, P)
    data /= 2 * total

    P = sp.csr_matrix((data, indices, indptr), shape=(n_samples, n_samples))
    # Increasing indices are friendlier to the caches in the gradient kernels
    P.sort_indices()
    return P


@numba.njit(nogil=True)
def _symmetrize_sorted(indptr, indices, data):
    n_samples = indptr.shape[0] - 1
    one_sided = np.zeros(indices.shape[0], dtype=np.bool_)
    n_added = np.zeros(n_samples, dtype=np.int64)

    # Rows are sorted by index, so the position of ``first`` in each row only
    # ever moves forward and a single pass over each row is enough
    cursor = indptr[:-1].copy()
    for first in range(n_samples):
        for k in range(indptr[first], indptr[first + 1]):
            target = indices[k]
            limit = indptr[target + 1]
            current = cursor[target]
            while current < limit and indices[current] < first:
                current += 1
            cursor[target] = current

            if current < limit and indices[current] == first:
                if first < target:
                    combined = data[k] + data[current]
                    data[k] = combined
                    data[current] = combined
            else:
                one_sided[k] = True
                n_added[target] += 1

    new_indptr = np.zeros(n_samples + 1, dtype=np.int64)
    for i in range(n_samples):
        row_length = indptr[i + 1] - indptr[i]
        new_indptr[i + 1] = new_indptr[i] + row_length + n_added[i]
    new_indices = np.empty(new_indptr[n_samples], dtype=np.int64)
    new_data = np.empty(new_indptr[n_samples], dtype=np.float64)

    fill = np.empty(n_samples, dtype=np.int64)
    for i in range(n_samples):
        offset = new_indptr[i] - indptr[i]
        for k in range(indptr[i], indptr[i + 1]):
            new_indices[k + offset] = indices[k]
            new_data[k + offset] = data[k]
        fill[i] = new_indptr[i] + indptr[i + 1] - indptr[i]

    for i in range(n_samples):
        for k in range(indptr[i], indptr[i + 1]):
            if one_sided[k]:
                target = indices[k]
                new_indices[fill[target]] = i
                new_data[fill[target]] = data[k]
                fill[target] += 1

    return new_indptr, new_indices, new_data


def symmetrize_matrix(P):
    """Symmetrize an arbitrary matrix of conditional probabilities.

    This produces the same result as :func:`symmetrize_nn`, but works on any
    sparse matrix, where points may have different numbers of neighbors. The
    rows are sorted by neighbor index first, which lets us merge the rows
    instead of searching them.

    Parameters
    ----------
    P: sp.spmatrix
        A square matrix, where row :math:`i` contains the conditional
        probabilities :math:`p_{j|i}`.

    Returns
    -------
    sp.csr_matrix
        A symmetric matrix summing to 1, with sorted column indices.

    """
    P = sp.csr_matrix(P, dtype=np.float64, copy=True)
    if P.shape[0] != P.shape[1]:
        raise ValueError(
            "The probability matrix must be square. Got shape %s." % (P.shape,)
        )
    P.sum_duplicates()
    P.sort_indices()

    n_samples = P.shape[0]
    total = P.data.sum()

    indptr, indices, data = _symmetrize_sorted(
        P.indptr.astype(np.int64),
        P.indices.astype(np.int64),
        P.data.copy(),
    )
    data /= 2 * total

    P = sp.csr_matrix((data, indices, indptr), shape=(n_samples, n_samples))
    P.sort_indices()
    return P
