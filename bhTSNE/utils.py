import logging
import multiprocessing
from time import time

import numpy as np

log = logging.getLogger(__name__)


class Timer:
    def __init__(self, message, verbose=False):
        self.message = message
        self.start_time = time()
        self.verbose = verbose

    def __enter__(self):
        self.start_time = time()
        if self.verbose:
            print("===>", self.message)

    def __exit__(self, *args):
        elapsed = time() - self.start_time
        log.debug("%s took %.2f seconds", self.message, elapsed)
        if self.verbose:
            print("   --> Time elapsed: %.2f seconds" % elapsed)


def effective_n_jobs(n_jobs):
    """Convert scikit-learn style ``n_jobs`` into an actual number of threads.

    ``-1`` means all the cores, ``-2`` all but one and so on. If that leaves
    no cores, a single thread is used.

    """
    if n_jobs is None:
        return 1

    n_cores = multiprocessing.cpu_count()
    if n_jobs < 0:
        # Add negative number of n_jobs to the number of cores, but increment by
        # one because -1 indicates using all cores, -2 all except one, and so on
        effective = n_cores + n_jobs + 1
    else:
        effective = n_jobs

    # If the number of jobs, after this correction is still <= 0, then the user
    # probably thought they had more cores, so we'll default to 1
    if effective <= 0:
        log.warning(
            "`n_jobs` received value %d but only %d cores are available. "
            "Defaulting to single job." % (n_jobs, n_cores)
        )
        effective = 1

    return effective


def check_embedding(embedding, n_samples, n_components):
    """Check that ``embedding`` can be updated in place as a t-SNE embedding.

    Flat buffers holding ``n_components`` consecutive values per point are
    accepted as well.

    Returns
    -------
    np.ndarray
        A ``n_samples * n_components`` view of ``embedding``.

    """
    if not isinstance(embedding, np.ndarray):
        raise TypeError(
            "`embedding` must be an instance of `np.ndarray`. Got `%s` instead."
            % type(embedding)
        )
    if embedding.dtype != np.float64:
        raise TypeError(
            "`embedding` must hold 64-bit floats, since it is updated in place. "
            "Got `%s`." % embedding.dtype
        )
    if not embedding.flags.writeable:
        raise ValueError("`embedding` must be writeable.")

    if embedding.ndim == 1:
        if embedding.shape[0] != n_samples * n_components:
            raise ValueError(
                "A flat embedding must contain %d values, got %d."
                % (n_samples * n_components, embedding.shape[0])
            )
        if not embedding.flags.c_contiguous:
            raise ValueError("A flat embedding must be contiguous.")
        return embedding.reshape(n_samples, n_components)

    if embedding.shape != (n_samples, n_components):
        raise ValueError(
            "The embedding has shape %s, but %d points in %d dimensions were "
            "expected." % (embedding.shape, n_samples, n_components)
        )
    return embedding
