import numpy as np
from sklearn.decomposition import PCA
from sklearn.utils import check_random_state

from bhTSNE import utils


def rescale(x, inplace=False, target_std=1e-4):
    """Rescale an embedding so optimization will not have convergence issues.

    Parameters
    ----------
    x: np.ndarray
    inplace: bool
    target_std: float

    Returns
    -------
    np.ndarray
        A scaled-down version of ``x``.

    """
    if not inplace:
        x = np.array(x, copy=True)

    std = np.std(x[:, 0])
    if std > 0:
        x /= std / target_std

    return x


def jitter(x, inplace=False, scale=0.01, random_state=None):
    """Add jitter with small standard deviation to avoid numerical problems
    when the points overlap exactly.

    Parameters
    ----------
    x: np.ndarray
    inplace: bool
    scale: float
    random_state: int or np.random.RandomState

    Returns
    -------
    np.ndarray
        A jittered version of ``x``.

    """
    if not inplace:
        x = np.array(x, copy=True)

    target_std = np.std(x[:, 0]) * scale
    random_state = check_random_state(random_state)
    x += random_state.normal(0, target_std, x.shape)

    return x


def random(n_samples, n_components=2, random_state=None, verbose=False):
    """Initialize an embedding using samples from an isotropic Gaussian.

    Parameters
    ----------
    n_samples: Union[int, np.ndarray]
        The number of samples. Also accepts a data matrix.

    n_components: int
        The dimension of the embedding space.

    random_state: Union[int, RandomState]
        If the value is an int, random_state is the seed used by the random
        number generator. If the value is a RandomState instance, then it will
        be used as the random number generator. If the value is None, the random
        number generator is the RandomState instance used by `np.random`.

    verbose: bool

    Returns
    -------
    initialization: np.ndarray

    """
    random_state = check_random_state(random_state)
    if isinstance(n_samples, np.ndarray):
        n_samples = n_samples.shape[0]
    embedding = random_state.normal(0, 1e-4, (n_samples, n_components))
    return np.ascontiguousarray(embedding)


def pca(X, n_components=2, random_state=None, verbose=False, add_jitter=True):
    """Initialize an embedding using the top principal components.

    The components are rescaled so the first one has standard deviation
    0.0001.

    Parameters
    ----------
    X: np.ndarray
        The data matrix.

    n_components: int
        The dimension of the embedding space.

    random_state: Union[int, RandomState]

    verbose: bool

    add_jitter: bool
        If True, jitter with small standard deviation is added to the
        initialization to prevent points overlapping exactly.

    Returns
    -------
    initialization: np.ndarray

    """
    with utils.Timer("Calculating PCA-based initialization...", verbose):
        pca_ = PCA(n_components=n_components, random_state=random_state)
        embedding = pca_.fit_transform(X)

        rescale(embedding, inplace=True)
        if add_jitter:
            jitter(embedding, inplace=True, random_state=random_state)

    return np.ascontiguousarray(embedding, dtype=np.float64)
