"""Numerical kernels for t-SNE.

Every kernel that loops over points is compiled twice: once as a plain serial
loop and once with ``parallel=True``, where the outer loop is distributed over
threads. Each point only ever writes into its own output slot, and scalar
quantities are first stored per point and then summed in index order, so both
versions produce the same floating point results.

"""
import numba
import numpy as np
from scipy.spatial.distance import pdist, squareform

from bhTSNE.quad_tree import non_edge_forces

EPSILON = np.finfo(np.float64).eps

# Perplexity calibration
PERPLEXITY_TOL = 1e-5
PERPLEXITY_MAX_ITER = 200


def _select_kernel(serial, parallel, num_threads):
    if num_threads > 1:
        numba.set_num_threads(min(num_threads, numba.config.NUMBA_NUM_THREADS))
        return parallel
    return serial


@numba.njit(nogil=True)
def _ordered_sum(x):
    total = 0.0
    for i in range(x.shape[0]):
        total += x[i]
    return total


def _gaussian_perplexity(distances, target_entropy, tol, max_iter, betas, n_steps, P):
    n_samples, k_neighbors = distances.shape

    for i in numba.prange(n_samples):
        # Shifting by the nearest distance leaves the normalized probabilities
        # and the entropy unchanged, but keeps the exponentials from underflowing
        sq_dist = np.empty(k_neighbors, dtype=np.float64)
        nearest = np.inf
        for k in range(k_neighbors):
            sq_dist[k] = distances[i, k] * distances[i, k]
            if sq_dist[k] < nearest:
                nearest = sq_dist[k]
        for k in range(k_neighbors):
            sq_dist[k] -= nearest

        beta = betas[i]
        min_beta, max_beta = 0.0, np.inf
        sum_P = 1.0
        used_beta = beta
        steps = 0

        for step in range(max_iter):
            steps = step + 1
            used_beta = beta

            sum_P, prod, prod2 = 0.0, 0.0, 0.0
            for k in range(k_neighbors):
                P[i, k] = np.exp(-beta * sq_dist[k])
                sum_P += P[i, k]
                prod += sq_dist[k] * P[i, k]
                prod2 += sq_dist[k] * sq_dist[k] * P[i, k]

            entropy = beta * (prod / sum_P) + np.log(sum_P)
            diff = entropy - target_entropy
            if abs(diff) < tol:
                break

            # Newton-Raphson first, as long as it stays within the bracket
            newton_ok = False
            derivative = -beta / sum_P * (prod2 - prod * prod / sum_P)
            if derivative != 0:
                new_beta = beta - diff / derivative
                if new_beta > min_beta and new_beta < max_beta:
                    beta = new_beta
                    newton_ok = True

            if not newton_ok:
                if diff > 0:
                    min_beta = beta
                    if max_beta == np.inf:
                        beta *= 2
                    else:
                        beta = (beta + max_beta) / 2
                else:
                    max_beta = beta
                    beta = (beta + min_beta) / 2

        for k in range(k_neighbors):
            P[i, k] /= sum_P

        betas[i] = used_beta
        n_steps[i] = steps


_gaussian_perplexity_serial = numba.njit(nogil=True)(_gaussian_perplexity)
_gaussian_perplexity_parallel = numba.njit(nogil=True, parallel=True)(
    _gaussian_perplexity
)


def compute_gaussian_perplexity(
    distances,
    perplexity=None,
    initial_betas=None,
    tol=PERPLEXITY_TOL,
    max_iter=PERPLEXITY_MAX_ITER,
    num_threads=1,
    return_betas=False,
):
    """Compute the conditional probabilities :math:`p_{j|i}` of every point.

    For every point we look for the precision :math:`\\beta_i` of a Gaussian
    kernel, so that the entropy of the distribution over its neighbors matches
    ``log(perplexity)``.

    Parameters
    ----------
    distances: np.ndarray
        A ``n_samples * k_neighbors`` matrix of distances to the nearest
        neighbors of each point.

    perplexity: float
        The target perplexity. Defaults to a third of the number of neighbors.

    initial_betas: np.ndarray
        Optional starting precisions, one per point. Defaults to 1.

    tol: float
        Tolerance on the difference between the achieved and target entropy.

    max_iter: int
        The maximum number of search steps per point.

    num_threads: int

    return_betas: bool
        Also return the final precisions and the number of steps each point
        needed.

    Returns
    -------
    P: np.ndarray
        A ``n_samples * k_neighbors`` matrix of row-normalized probabilities.

    betas: np.ndarray
        Returned if ``return_betas=True``.

    n_steps: np.ndarray
        Returned if ``return_betas=True``.

    """
    distances = np.ascontiguousarray(distances, dtype=np.float64)
    n_samples, k_neighbors = distances.shape

    if perplexity is None:
        perplexity = k_neighbors / 3
    target_entropy = np.log(perplexity)

    if initial_betas is None:
        betas = np.ones(n_samples, dtype=np.float64)
    else:
        betas = np.array(initial_betas, dtype=np.float64, copy=True)
    n_steps = np.zeros(n_samples, dtype=np.int64)
    P = np.zeros_like(distances)

    kernel = _select_kernel(
        _gaussian_perplexity_serial, _gaussian_perplexity_parallel, num_threads
    )
    kernel(distances, target_entropy, tol, max_iter, betas, n_steps, P)

    if return_betas:
        return P, betas, n_steps
    return P


def _positive_gradient_nn(
    indices,
    indptr,
    P_data,
    embedding,
    multiplier,
    should_eval_error,
    pos_f,
    kl_buffer,
    sum_P_buffer,
):
    n_samples, n_dims = embedding.shape

    for i in numba.prange(n_samples):
        for d in range(n_dims):
            pos_f[i, d] = 0

        kl_divergence, sum_P = 0.0, 0.0
        for k in range(indptr[i], indptr[i + 1]):
            j = indices[k]

            sqdist = 0.0
            for d in range(n_dims):
                sqdist += (embedding[i, d] - embedding[j, d]) ** 2

            q = 1 / (1 + sqdist)
            mult = multiplier * P_data[k] * q
            for d in range(n_dims):
                pos_f[i, d] += mult * (embedding[i, d] - embedding[j, d])

            # The error is always computed on the unexaggerated probabilities
            if should_eval_error and P_data[k] > 0:
                sum_P += P_data[k]
                kl_divergence += P_data[k] * np.log(P_data[k] / (q + EPSILON))

        kl_buffer[i] = kl_divergence
        sum_P_buffer[i] = sum_P


_positive_gradient_nn_serial = numba.njit(nogil=True)(_positive_gradient_nn)
_positive_gradient_nn_parallel = numba.njit(nogil=True, parallel=True)(
    _positive_gradient_nn
)


def estimate_positive_gradient_nn(
    indices,
    indptr,
    P_data,
    embedding,
    pos_f,
    multiplier=1,
    should_eval_error=False,
    num_threads=1,
):
    """Compute the attractive forces along the edges of the neighbor graph.

    Parameters
    ----------
    indices, indptr, P_data: np.ndarray
        The CSR representation of the joint probability matrix :math:`P`.

    embedding: np.ndarray

    pos_f: np.ndarray
        Output array of the same shape as ``embedding``.

    multiplier: float
        The exaggeration applied to the probabilities.

    should_eval_error: bool
        Whether to evaluate the KL divergence terms along the edges.

    num_threads: int

    Returns
    -------
    sum_P: float
        The sum of the probabilities, only computed when ``should_eval_error``.

    kl_divergence: float
        The unnormalized part of the KL divergence
        :math:`\\sum_{ij} p_{ij} \\log (p_{ij} / w_{ij})`, where :math:`w_{ij}`
        are the unnormalized low dimensional affinities.

    """
    n_samples = embedding.shape[0]
    kl_buffer = np.zeros(n_samples, dtype=np.float64)
    sum_P_buffer = np.zeros(n_samples, dtype=np.float64)

    kernel = _select_kernel(
        _positive_gradient_nn_serial, _positive_gradient_nn_parallel, num_threads
    )
    kernel(
        indices,
        indptr,
        P_data,
        embedding,
        float(multiplier),
        should_eval_error,
        pos_f,
        kl_buffer,
        sum_P_buffer,
    )

    if not should_eval_error:
        return 0.0, 0.0
    return _ordered_sum(sum_P_buffer), _ordered_sum(kl_buffer)


def _negative_gradient_bh(
    embedding,
    theta,
    midpoint,
    halfwidth,
    center_of_mass,
    number,
    is_leaf,
    children,
    stack_size,
    neg_f,
    sum_Q_buffer,
):
    n_samples = embedding.shape[0]
    for i in numba.prange(n_samples):
        sum_Q_buffer[i] = non_edge_forces(
            embedding[i],
            i,
            theta,
            midpoint,
            halfwidth,
            center_of_mass,
            number,
            is_leaf,
            children,
            stack_size,
            neg_f[i],
        )


_negative_gradient_bh_serial = numba.njit(nogil=True)(_negative_gradient_bh)
_negative_gradient_bh_parallel = numba.njit(nogil=True, parallel=True)(
    _negative_gradient_bh
)


def estimate_negative_gradient_bh(
    tree, embedding, neg_f, theta=0.5, sum_Q_buffer=None, num_threads=1
):
    """Estimate the repulsive forces using the Barnes-Hut approximation.

    Parameters
    ----------
    tree: QuadTree
        A tree built on ``embedding``.

    embedding: np.ndarray

    neg_f: np.ndarray
        Output array of the same shape as ``embedding``; receives the
        unnormalized repulsive forces.

    theta: float

    sum_Q_buffer: np.ndarray
        Optional scratch array with one slot per point.

    num_threads: int

    Returns
    -------
    float
        The normalization term :math:`\\sum_{i \\neq j} (1 + d_{ij}^2)^{-1}`.

    """
    if sum_Q_buffer is None:
        sum_Q_buffer = np.zeros(embedding.shape[0], dtype=np.float64)

    kernel = _select_kernel(
        _negative_gradient_bh_serial, _negative_gradient_bh_parallel, num_threads
    )
    kernel(
        embedding,
        float(theta),
        tree.midpoint,
        tree.halfwidth,
        tree.center_of_mass,
        tree.number,
        tree.is_leaf,
        tree.children,
        tree.stack_size,
        neg_f,
        sum_Q_buffer,
    )

    return _ordered_sum(sum_Q_buffer)


@numba.njit(nogil=True)
def estimate_negative_gradient_exact(embedding, neg_f):
    """Compute the exact repulsive forces by comparing all pairs of points.

    This is quadratic in the number of points and only meant as a reference
    for the tree approximation.

    """
    n_samples, n_dims = embedding.shape
    sum_Q = 0.0
    for i in range(n_samples):
        for d in range(n_dims):
            neg_f[i, d] = 0
        for j in range(n_samples):
            if i == j:
                continue
            sqdist = 0.0
            for d in range(n_dims):
                sqdist += (embedding[i, d] - embedding[j, d]) ** 2
            q = 1 / (1 + sqdist)
            sum_Q += q
            for d in range(n_dims):
                neg_f[i, d] += q * q * (embedding[i, d] - embedding[j, d])
    return sum_Q


def kl_divergence_exact(P, embedding):
    """Compute the exact KL divergence between ``P`` and the embedding."""
    P = np.asarray(P.toarray() if hasattr(P, "toarray") else P, dtype=np.float64)

    Q = 1 / (1 + squareform(pdist(embedding, metric="sqeuclidean")))
    np.fill_diagonal(Q, 0)
    Q /= np.sum(Q)

    mask = P > 0
    return np.sum(P[mask] * np.log(P[mask] / (Q[mask] + EPSILON)))
