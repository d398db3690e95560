from .version import __version__

from .tsne import TSNE, Status, OptimizationInterrupt
from .quad_tree import QuadTree
from .affinity import PerplexityBasedNN, joint_probabilities_nn

__all__ = [
    "TSNE",
    "Status",
    "OptimizationInterrupt",
    "QuadTree",
    "PerplexityBasedNN",
    "joint_probabilities_nn",
]
