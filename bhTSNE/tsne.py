import logging
from collections.abc import Iterable
from types import SimpleNamespace
from time import time

import numpy as np
from sklearn.base import BaseEstimator

from bhTSNE import _tsne
from bhTSNE import initialization as initialization_scheme
from bhTSNE import utils
from bhTSNE.affinity import Affinities, PerplexityBasedNN, joint_probabilities_nn
from bhTSNE.quad_tree import QuadTree

EPSILON = np.finfo(np.float64).eps
MIN_GAIN = 0.01

log = logging.getLogger(__name__)


def _check_callbacks(callbacks):
    if callbacks is not None:
        # The optimizer deals with lists
        if callable(callbacks):
            callbacks = (callbacks,)
        # If list was passed, make sure all of them are actually callable
        elif isinstance(callbacks, Iterable):
            callbacks = tuple(callbacks)
            if any(not callable(c) for c in callbacks):
                raise ValueError("`callbacks` must contain callable objects!")
        else:
            raise ValueError("`callbacks` must be a callable object!")

    return callbacks


def _check_objective_function(negative_gradient_method):
    if callable(negative_gradient_method):
        return negative_gradient_method
    elif negative_gradient_method in {"bh", "BH", "barnes-hut"}:
        return kl_divergence_bh
    elif negative_gradient_method in {"fft", "FFT", "interpolation"}:
        raise ValueError(
            "Interpolation based t-SNE is not supported. Please use the "
            "Barnes-Hut approximation (`negative_gradient_method=\"bh\"`) or "
            "provide a valid callback."
        )
    else:
        raise ValueError(
            "Unrecognized gradient method. Please choose one of "
            "the supported methods or provide a valid callback."
        )


def __check_init_num_samples(num_samples, required_num_samples):
    if num_samples != required_num_samples:
        raise ValueError(
            "The provided initialization contains a different number "
            "of points (%d) than the data provided (%d)."
            % (num_samples, required_num_samples)
        )


def __check_init_num_dimensions(num_dimensions, required_num_dimensions):
    if num_dimensions != required_num_dimensions:
        raise ValueError(
            "The provided initialization contains a different number "
            "of components (%d) than the embedding (%d)."
            % (num_dimensions, required_num_dimensions)
        )


def __check_num_components(n_components):
    if n_components not in (1, 2, 3):
        raise ValueError(
            "Barnes-Hut t-SNE supports embeddings into 1, 2 or 3 dimensions. "
            "Got `n_components=%s`." % n_components
        )


init_checks = SimpleNamespace(
    num_samples=__check_init_num_samples,
    num_dimensions=__check_init_num_dimensions,
    num_components=__check_num_components,
)


class OptimizationInterrupt(InterruptedError):
    """Optimization was interrupted by a callback.

    Parameters
    ----------
    error: float
        The KL divergence of the embedding.

    final_embedding: np.ndarray
        The embedding at the time of the interruption.

    """

    def __init__(self, error, final_embedding):
        super().__init__()
        self.error = error
        self.final_embedding = final_embedding


class Status:
    """The state of a t-SNE optimization.

    A status is created by :meth:`TSNE.initialize` and holds everything that
    needs to carry over from one iteration to the next. Passing the same status
    to :meth:`TSNE.run` again resumes the optimization where it stopped.

    Parameters
    ----------
    P: sp.csr_matrix
        The symmetric joint probability matrix.

    n_components: int
        The dimension of the embedding space.

    max_depth: int
        The maximum depth of the Barnes-Hut tree.

    Attributes
    ----------
    iter: int
        The number of iterations performed so far.

    dY: np.ndarray
        The gradient from the last iteration.

    uY: np.ndarray
        The last update, carried over as momentum.

    gains: np.ndarray
        The per-coordinate adaptive gains.

    pos_f: np.ndarray
        The attractive forces from the last iteration.

    neg_f: np.ndarray
        The unnormalized repulsive forces from the last iteration.

    tree: QuadTree
        The Barnes-Hut tree, rebuilt every iteration.

    kl_divergence: float
        The last evaluated KL divergence, or None if it was never evaluated.

    """

    def __init__(self, P, n_components=2, max_depth=7):
        n_samples = P.shape[0]
        shape = (n_samples, n_components)

        self.P = P
        self.iter = 0
        self.dY = np.zeros(shape, dtype=np.float64)
        self.uY = np.zeros(shape, dtype=np.float64)
        self.gains = np.ones(shape, dtype=np.float64)
        self.pos_f = np.zeros(shape, dtype=np.float64)
        self.neg_f = np.zeros(shape, dtype=np.float64)
        self.sum_Q_buffer = np.zeros(n_samples, dtype=np.float64)
        self.tree = QuadTree(n_samples, n_components, max_depth=max_depth)
        self.kl_divergence = None

    @property
    def n_samples(self):
        return self.dY.shape[0]

    @property
    def n_components(self):
        return self.dY.shape[1]

    def copy(self):
        status = self.__class__(self.P, self.n_components, self.tree.max_depth)
        status.iter = self.iter
        status.kl_divergence = self.kl_divergence
        for name in ("dY", "uY", "gains", "pos_f", "neg_f"):
            np.copyto(getattr(status, name), getattr(self, name))
        return status


def kl_divergence_bh(
    embedding,
    status,
    multiplier=1,
    theta=0.5,
    should_eval_error=False,
    n_jobs=1,
    **_,
):
    """Compute the t-SNE gradient using the Barnes-Hut approximation.

    The attractive forces are summed along the edges of the joint probability
    matrix, the repulsive forces are estimated from a tree built on the current
    embedding. The gradient is written into ``status.dY``.

    Parameters
    ----------
    embedding: np.ndarray

    status: Status

    multiplier: float
        The exaggeration applied to the attractive forces.

    theta: float

    should_eval_error: bool

    n_jobs: int

    Returns
    -------
    float
        The KL divergence of the embedding, if ``should_eval_error`` was set.
        The exaggeration does not affect the error.

    np.ndarray
        The gradient.

    """
    tree = status.tree
    tree.build(embedding)

    P = status.P
    sum_P, kl_divergence_ = _tsne.estimate_positive_gradient_nn(
        P.indices,
        P.indptr,
        P.data,
        embedding,
        status.pos_f,
        multiplier=multiplier,
        should_eval_error=should_eval_error,
        num_threads=n_jobs,
    )

    sum_Q = _tsne.estimate_negative_gradient_bh(
        tree,
        embedding,
        status.neg_f,
        theta=theta,
        sum_Q_buffer=status.sum_Q_buffer,
        num_threads=n_jobs,
    )

    np.subtract(status.pos_f, status.neg_f / sum_Q, out=status.dY)

    # Computing positive gradients summed up only unnormalized q_ijs, so we
    # have to include normalization term separately
    if should_eval_error:
        kl_divergence_ += sum_P * np.log(sum_Q + EPSILON)

    return kl_divergence_, status.dY


class TSNE(BaseEstimator):
    """Barnes-Hut t-distributed Stochastic Neighbor Embedding.

    The configuration is fixed at construction; the optimizer only reads it.
    All the state of an optimization lives in :class:`Status` objects.

    Parameters
    ----------
    n_components: int
        The dimension of the embedding space, 1, 2 or 3.

    perplexity: float
        Perplexity can be thought of as the continuous :math:`k` number of
        nearest neighbors, for which t-SNE will attempt to preserve distances.
        When the nearest neighbors are searched for by :meth:`fit`, three times
        as many neighbors are used. When the nearest neighbors are given, the
        perplexity is a third of their number and this value is ignored.

    theta: float
        This is the trade-off parameter between speed and accuracy of the tree
        approximation method. Typical values range from 0.2 to 0.8. The value 0
        indicates that no approximation is to be made and produces exact results
        also producing longer runtime.

    max_iter: int
        The total number of iterations.

    stop_lying_iter: int
        The number of iterations to run in the *early exaggeration* phase.

    mom_switch_iter: int
        The number of iterations after which ``start_momentum`` is replaced by
        ``final_momentum``.

    start_momentum: float
        The momentum used before ``mom_switch_iter``.

    final_momentum: float
        The momentum used from ``mom_switch_iter`` on.

    eta: Union[str, float]
        The learning rate. When ``eta="auto"`` the learning rate is set to
        max(200, N / 12), as determined in Belkina et al. "Automated optimized
        parameters for T-distributed stochastic neighbor embedding improve
        visualization and analysis of large datasets", 2019.

    exaggeration_factor: float
        The factor the attractive forces are multiplied with during the
        *early exaggeration* phase. This forms tight, well separated clusters
        which can then move around freely before settling down.

    max_depth: int
        The maximum depth of the Barnes-Hut tree.

    negative_gradient_method: Union[str, Callable]
        Only the Barnes-Hut approximation is available and can be set using
        one of the following aliases: ``bh``, ``BH`` or ``barnes-hut``.
        Alternatively, a callable with the signature of
        :func:`kl_divergence_bh` may be provided.

    initialization: Union[np.ndarray, str]
        The initial point positions used by :meth:`fit`. Can be a precomputed
        numpy array, ``pca`` or ``random``. Precomputed positions should have
        small variance (std(Y) < 0.0001), otherwise you may get poor
        embeddings.

    metric: Union[str, Callable]
        The metric to be used to compute affinities between points in the
        original space.

    metric_params: dict
        Additional keyword arguments for the metric function.

    neighbors: Union[str, KNNIndex]
        The nearest neighbor method used by :meth:`fit`. Can be ``exact`` or a
        :class:`bhTSNE.nearest_neighbors.KNNIndex` instance.

    affinities: bhTSNE.affinity.Affinities
        A precomputed affinity object. If specified, other affinity-related
        parameters are ignored e.g. `perplexity` and anything nearest-neighbor
        search related.

    n_jobs: int
        The number of threads to use while running t-SNE. This follows the
        scikit-learn convention, ``-1`` meaning all processors, ``-2`` meaning
        all but one, etc.

    callbacks: Union[Callable, List[Callable]]
        Callbacks, which will be run every ``callbacks_every_iters`` iterations.

    callbacks_every_iters: int
        How many iterations should pass between each time the callbacks are
        invoked.

    random_state: Union[int, RandomState]
        If the value is an int, random_state is the seed used by the random
        number generator. If the value is a RandomState instance, then it will
        be used as the random number generator. If the value is None, the random
        number generator is the RandomState instance used by `np.random`.

    verbose: bool

    """

    def __init__(
        self,
        n_components=2,
        perplexity=30,
        theta=0.5,
        max_iter=1000,
        stop_lying_iter=250,
        mom_switch_iter=250,
        start_momentum=0.5,
        final_momentum=0.8,
        eta=200,
        exaggeration_factor=12,
        max_depth=7,
        negative_gradient_method="bh",
        initialization="pca",
        metric="euclidean",
        metric_params=None,
        neighbors="exact",
        affinities=None,
        n_jobs=1,
        callbacks=None,
        callbacks_every_iters=50,
        random_state=None,
        verbose=False,
    ):
        self.n_components = n_components
        self.perplexity = perplexity
        self.theta = theta
        self.max_iter = max_iter
        self.stop_lying_iter = stop_lying_iter
        self.mom_switch_iter = mom_switch_iter
        self.start_momentum = start_momentum
        self.final_momentum = final_momentum
        self.eta = eta
        self.exaggeration_factor = exaggeration_factor
        self.max_depth = max_depth
        self.negative_gradient_method = negative_gradient_method
        # Check if the number of components match the initialization dimension
        if isinstance(initialization, np.ndarray):
            init_checks.num_dimensions(initialization.shape[1], n_components)
        self.initialization = initialization
        self.metric = metric
        self.metric_params = metric_params
        self.neighbors = neighbors
        if affinities is not None and not isinstance(affinities, Affinities):
            raise ValueError(
                "`affinities` must be an instance of `bhTSNE.affinity.Affinities`"
            )
        self.affinities = affinities
        self.n_jobs = n_jobs
        self.callbacks = callbacks
        self.callbacks_every_iters = callbacks_every_iters
        self.random_state = random_state
        self.verbose = verbose

    def initialize(self, neighbors, distances):
        """Prepare an optimization from precomputed nearest neighbors.

        The perplexity is set to a third of the number of neighbors.

        Parameters
        ----------
        neighbors: np.ndarray
            A ``n_samples * k_neighbors`` matrix with the indices of each
            point's nearest neighbors, excluding the point itself.

        distances: np.ndarray
            A ``n_samples * k_neighbors`` matrix with the distances to those
            neighbors.

        Returns
        -------
        Status

        Raises
        ------
        ValueError
            If the neighbor indices and distances do not match, if there are
            as many neighbors as points or if the configuration is invalid.

        """
        self._check_params()
        with utils.Timer("Calculating affinity matrix...", self.verbose):
            P = joint_probabilities_nn(
                neighbors, distances, n_jobs=utils.effective_n_jobs(self.n_jobs)
            )
        return Status(P, self.n_components, self.max_depth)

    def initialize_from_index(self, knn_index):
        """Prepare an optimization using any nearest neighbor source.

        Parameters
        ----------
        knn_index: bhTSNE.nearest_neighbors.KNNIndex
            Anything with a ``build`` method returning the neighbor indices and
            distances.

        Returns
        -------
        Status

        """
        self._check_params()
        indices, distances = knn_index.build()
        return self.initialize(indices, distances)

    def prepare_initial(self, X):
        """Prepare the affinities and the initial embedding for ``X``.

        Parameters
        ----------
        X: np.ndarray
            The data matrix to be embedded.

        Returns
        -------
        embedding: np.ndarray
            The initial point positions.

        status: Status
            A fresh optimization status.

        """
        self._check_params()

        if self.affinities is None:
            affinities = PerplexityBasedNN(
                X,
                self.perplexity,
                method=self.neighbors,
                metric=self.metric,
                metric_params=self.metric_params,
                n_jobs=self.n_jobs,
                verbose=self.verbose,
            )
        else:
            log.info(
                "Precomputed affinities provided. Ignoring perplexity-related "
                "parameters."
            )
            affinities = self.affinities

        n_samples = affinities.P.shape[0]

        # If initial positions are given in an array, use a copy of that
        if isinstance(self.initialization, np.ndarray):
            init_checks.num_samples(self.initialization.shape[0], n_samples)
            init_checks.num_dimensions(self.initialization.shape[1], self.n_components)
            embedding = np.array(self.initialization, dtype=np.float64, order="C")
            stddev = np.std(embedding, axis=0)
            if any(stddev > 1e-2):
                log.warning(
                    "Standard deviation of embedding is greater than 0.0001. Initial "
                    "embeddings with high variance may have display poor convergence."
                )
        elif self.initialization == "pca":
            embedding = initialization_scheme.pca(
                X,
                self.n_components,
                random_state=self.random_state,
                verbose=self.verbose,
            )
        elif self.initialization == "random":
            embedding = initialization_scheme.random(
                n_samples,
                self.n_components,
                random_state=self.random_state,
                verbose=self.verbose,
            )
        else:
            raise ValueError(
                f"Unrecognized initialization scheme `{self.initialization}`."
            )

        status = Status(affinities.P, self.n_components, self.max_depth)
        return embedding, status

    def fit(self, X):
        """Fit a t-SNE embedding for a given data set.

        Finds the nearest neighbors, initializes the embedding and runs the
        full optimization schedule.

        Parameters
        ----------
        X: np.ndarray
            The data matrix to be embedded.

        Returns
        -------
        np.ndarray
            A fully optimized t-SNE embedding.

        """
        if self.verbose:
            print("-" * 80, repr(self), "-" * 80, sep="\n")

        embedding, status = self.prepare_initial(X)
        self.run(status, embedding)
        return embedding

    def run(self, status, embedding, n_iter=None, propagate_exception=False):
        """Optimize ``embedding`` in place.

        The optimization runs from ``status.iter`` up to ``max_iter``. The early
        exaggeration and the momentum follow the schedule for the current
        iteration, so an interrupted optimization can be resumed by calling
        this method again with the same status and embedding.

        Parameters
        ----------
        status: Status
            The status returned by :meth:`initialize` or a previous call.

        embedding: np.ndarray
            A ``n_samples * n_components`` array of 64-bit floats, or a flat
            array with ``n_components`` consecutive values for every point.
            It is updated in place.

        n_iter: int
            Stop after this many iterations, even if ``max_iter`` was not
            reached yet.

        propagate_exception: bool
            The optimization process can be interrupted using callbacks. This
            flag indicates whether we should propagate that exception or to
            simply stop optimization and return the resulting embedding.

        Returns
        -------
        np.ndarray
            The same ``embedding`` that was passed in.

        Raises
        ------
        OptimizationInterrupt
            If a callback stops the optimization and the ``propagate_exception``
            flag is set, then an exception is raised.

        """
        points = utils.check_embedding(
            embedding, status.n_samples, status.n_components
        )
        objective_function = _check_objective_function(self.negative_gradient_method)
        callbacks = _check_callbacks(self.callbacks)
        n_jobs = utils.effective_n_jobs(self.n_jobs)
        learning_rate = self._learning_rate(status.n_samples)

        end_iter = self.max_iter
        if n_iter is not None:
            end_iter = min(end_iter, status.iter + n_iter)

        # Notify the callbacks that the optimization is about to start
        if callbacks is not None:
            for callback in callbacks:
                # Only call function if present on object
                getattr(callback, "optimization_about_to_start", lambda: ...)()

        timer = utils.Timer(
            "Running optimization with lr=%.2f for %d iterations..." % (
                learning_rate, max(end_iter - status.iter, 0)
            ),
            verbose=self.verbose,
        )
        timer.__enter__()
        start_time = time()

        try:
            while status.iter < end_iter:
                # Stop lying about the P-values after a while, and switch momentum
                if status.iter < self.stop_lying_iter:
                    multiplier = self.exaggeration_factor
                else:
                    multiplier = 1
                if status.iter < self.mom_switch_iter:
                    momentum = self.start_momentum
                else:
                    momentum = self.final_momentum

                should_call_callback = (
                    callbacks is not None
                    and (status.iter + 1) % self.callbacks_every_iters == 0
                )
                # Evaluate error on 50 iterations for logging, or when callbacks
                should_eval_error = should_call_callback or (
                    self.verbose and (status.iter + 1) % 50 == 0
                )

                error, gradient = objective_function(
                    points,
                    status,
                    multiplier=multiplier,
                    theta=self.theta,
                    should_eval_error=should_eval_error,
                    n_jobs=n_jobs,
                )
                if should_eval_error:
                    status.kl_divergence = error

                if should_call_callback:
                    # Continue only if all the callbacks say so
                    should_stop = any(
                        (bool(c(status.iter + 1, error, points)) for c in callbacks)
                    )
                    if should_stop:
                        raise OptimizationInterrupt(
                            error=error, final_embedding=embedding
                        )

                self._update(status, points, gradient, momentum, learning_rate)
                status.iter += 1

                if self.verbose and status.iter % 50 == 0:
                    stop_time = time()
                    print("Iteration %4d, KL divergence %6.4f, 50 iterations in %.4f sec" % (
                        status.iter, error, stop_time - start_time))
                    start_time = time()

        except OptimizationInterrupt as ex:
            log.info("Optimization was interrupted with callback.")
            if propagate_exception:
                raise ex

        finally:
            timer.__exit__()

        return embedding

    @staticmethod
    def _update(status, embedding, gradient, momentum, learning_rate):
        """Apply one step of gradient descent with momentum and gains."""
        if gradient is not status.dY:
            np.copyto(status.dY, gradient)

        gains, update = status.gains, status.uY

        # Grow the gains where the gradient disagrees with the last update
        grad_direction_flipped = np.sign(update) != np.sign(gradient)
        grad_direction_same = np.invert(grad_direction_flipped)
        gains[grad_direction_flipped] += 0.2
        gains[grad_direction_same] *= 0.8
        np.maximum(gains, MIN_GAIN, out=gains)

        update *= momentum
        update -= learning_rate * gains * gradient
        embedding += update

        # Keep the embedding centered at the origin
        embedding -= np.mean(embedding, axis=0)

    def _learning_rate(self, n_samples):
        if self.eta == "auto":
            return max(200, n_samples / 12)
        return self.eta

    def _check_params(self):
        init_checks.num_components(self.n_components)
        _check_objective_function(self.negative_gradient_method)
        _check_callbacks(self.callbacks)
        if self.max_depth < 0:
            raise ValueError("`max_depth` must be non-negative.")
        if self.callbacks_every_iters < 1:
            raise ValueError("`callbacks_every_iters` must be a positive integer.")
