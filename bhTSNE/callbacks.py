import logging
import time

import numpy as np

from bhTSNE import _tsne

log = logging.getLogger(__name__)


class Callback:
    def optimization_about_to_start(self):
        """This is called at the beginning of every call to ``TSNE.run``."""

    def __call__(self, iteration, error, embedding):
        """This is the main method called from the optimization.

        Parameters
        ----------
        iteration: int
            The current iteration number, counting from 1.

        error: float
            The current KL divergence of the given embedding.

        embedding: np.ndarray
            The current embedding, before this iteration's update.

        Returns
        -------
        stop_optimization: bool
            If this value is set to ``True``, the optimization will be
            interrupted.

        """


class ErrorLogger(Callback):
    """Basic error logger.

    This logger prints out basic information about the optimization. These
    include the iteration number, error and how much time has elapsed from the
    previous callback invocation.

    """

    def __init__(self):
        self.iter_count = 0
        self.last_log_time = None

    def optimization_about_to_start(self):
        self.last_log_time = time.time()
        self.iter_count = None

    def __call__(self, iteration, error, embedding):
        now = time.time()
        duration = now - self.last_log_time
        self.last_log_time = now

        # Runs may be resumed part way, so count from the first report
        if self.iter_count is None:
            n_iters = 0
        else:
            n_iters = iteration - self.iter_count
        self.iter_count = iteration

        print("Iteration % 4d, KL divergence % 6.4f, %d iterations in %.4f sec" % (
            iteration, error, n_iters, duration))


class ErrorApproximations(Callback):
    """Check how good the Barnes-Hut error approximation is.

    Records the approximated KL divergence next to the exact one, computed on
    all pairs of points. Only feasible for small data sets.

    """

    def __init__(self, P):
        self.P = P.copy()
        self.exact_errors = []
        self.bh_errors = []

    def __call__(self, iteration, error, embedding):
        self.exact_errors.append(_tsne.kl_divergence_exact(self.P, embedding))
        self.bh_errors.append(error)

    def report(self):
        exact_errors = np.array(self.exact_errors)
        bh_errors = np.array(self.bh_errors)

        bh_diff = bh_errors - exact_errors
        log.info("Barnes-Hut: mean difference %.4f (±%.4f)" % (
            np.mean(bh_diff), np.std(bh_diff)))
        return bh_diff
