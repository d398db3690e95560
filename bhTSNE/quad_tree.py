"""A generalization of the quad tree to an arbitrary number of dimensions.

In one dimension this is a binary tree, in two dimensions a quad tree and in
three dimensions an oct tree. Each node covers an axis-aligned box, given by
its midpoint and its per-dimension half widths, and is split into ``2**d``
children, one per orthant. Child ``k`` lies above its parent's midpoint along
dimension ``b`` exactly when bit ``b`` of ``k`` is set.

The nodes are kept in an arena of flat numpy arrays and addressed by their
position in those arrays; the root is always node 0 and missing children are
marked with ``-1``. This keeps the tree usable from numba-compiled code, where
the Barnes-Hut queries are run for every point in every iteration.

"""
import numba
import numpy as np

# Half width used along dimensions where all the points coincide
MIN_HALFWIDTH = 1e-8
# Relative padding so the points lie strictly inside the root box
BOX_PADDING = 1e-5


@numba.njit(nogil=True)
def _select_child(point, midpoint):
    child = 0
    for d in range(point.shape[0]):
        if point[d] > midpoint[d]:
            child |= 1 << d
    return child


@numba.njit(nogil=True)
def _add_child(
    parent, k, midpoint, halfwidth, center_of_mass, number, is_leaf, children, n_nodes
):
    child = n_nodes
    for d in range(midpoint.shape[1]):
        halfwidth[child, d] = halfwidth[parent, d] / 2
        if (k >> d) & 1:
            midpoint[child, d] = midpoint[parent, d] + halfwidth[child, d]
        else:
            midpoint[child, d] = midpoint[parent, d] - halfwidth[child, d]
        center_of_mass[child, d] = 0
    number[child] = 0
    is_leaf[child] = True
    children[child, :] = -1
    children[parent, k] = child
    return n_nodes + 1


@numba.njit(nogil=True)
def _insert(
    index,
    embedding,
    max_depth,
    midpoint,
    halfwidth,
    center_of_mass,
    number,
    is_leaf,
    children,
    occupant,
    locations,
    n_nodes,
):
    n_dims = embedding.shape[1]
    point = embedding[index]

    node = 0
    for depth in range(max_depth + 1):
        count = number[node]
        number[node] = count + 1
        for d in range(n_dims):
            center_of_mass[node, d] += (point[d] - center_of_mass[node, d]) / (count + 1)

        if is_leaf[node]:
            # Empty leaves take the point, leaves at the maximum depth absorb it
            if count == 0 or depth == max_depth:
                if count == 0:
                    occupant[node] = index
                locations[index] = node
                break

            # The leaf is occupied, so move its point one level down first
            other = occupant[node]
            k = _select_child(embedding[other], midpoint[node])
            n_nodes = _add_child(
                node, k, midpoint, halfwidth, center_of_mass, number, is_leaf,
                children, n_nodes,
            )
            child = children[node, k]
            number[child] = 1
            center_of_mass[child, :] = embedding[other]
            occupant[child] = other
            locations[other] = child
            is_leaf[node] = False

        k = _select_child(point, midpoint[node])
        if children[node, k] < 0:
            n_nodes = _add_child(
                node, k, midpoint, halfwidth, center_of_mass, number, is_leaf,
                children, n_nodes,
            )
        node = children[node, k]

    return n_nodes


@numba.njit(nogil=True)
def _build(
    embedding,
    max_depth,
    midpoint,
    halfwidth,
    center_of_mass,
    number,
    is_leaf,
    children,
    occupant,
    locations,
):
    n_samples, n_dims = embedding.shape

    for d in range(n_dims):
        lower = embedding[0, d]
        upper = embedding[0, d]
        for i in range(1, n_samples):
            if embedding[i, d] < lower:
                lower = embedding[i, d]
            if embedding[i, d] > upper:
                upper = embedding[i, d]
        midpoint[0, d] = (lower + upper) / 2
        halfwidth[0, d] = max((upper - lower) / 2 * (1 + BOX_PADDING), MIN_HALFWIDTH)
        center_of_mass[0, d] = 0

    number[0] = 0
    is_leaf[0] = True
    children[0, :] = -1

    n_nodes = 1
    for i in range(n_samples):
        n_nodes = _insert(
            i, embedding, max_depth, midpoint, halfwidth, center_of_mass, number,
            is_leaf, children, occupant, locations, n_nodes,
        )

    return n_nodes


@numba.njit(nogil=True)
def non_edge_forces(
    point,
    index,
    theta,
    midpoint,
    halfwidth,
    center_of_mass,
    number,
    is_leaf,
    children,
    stack_size,
    out,
):
    """Estimate the repulsive forces acting on ``point``.

    ``index`` is the position of ``point`` in the embedding the tree was built
    on, or a negative number if the point is not part of it. The indexed point
    is never compared with itself: every node on its path from the root counts
    one point less and has that point removed from its center of mass.

    Returns the contribution of ``point`` to the normalization term
    :math:`\\sum_{j} (1 + \\|y_i - y_j\\|^2)^{-1}`; the unnormalized forces are
    written into ``out``.

    """
    n_dims = point.shape[0]
    n_children = children.shape[1]

    diff = np.empty(n_dims, dtype=np.float64)
    stack = np.empty(stack_size, dtype=np.int64)
    on_path = np.empty(stack_size, dtype=np.bool_)

    for d in range(n_dims):
        out[d] = 0

    sum_Q = 0.0
    stack[0] = 0
    on_path[0] = index >= 0
    top = 1
    while top > 0:
        top -= 1
        node = stack[top]
        contains_self = on_path[top]

        mass = number[node]
        if contains_self:
            mass -= 1
        if mass <= 0:
            continue

        sqdist = 0.0
        max_width = 0.0
        for d in range(n_dims):
            if contains_self:
                com = (center_of_mass[node, d] * number[node] - point[d]) / mass
            else:
                com = center_of_mass[node, d]
            diff[d] = point[d] - com
            sqdist += diff[d] * diff[d]
            if halfwidth[node, d] > max_width:
                max_width = halfwidth[node, d]

        if is_leaf[node] or max_width < theta * np.sqrt(sqdist):
            # A free-standing coordinate sitting exactly on a lone point
            if index < 0 and is_leaf[node] and mass == 1 and sqdist == 0:
                continue
            q = 1 / (1 + sqdist)
            sum_Q += mass * q
            mult = mass * q * q
            for d in range(n_dims):
                out[d] += mult * diff[d]
        else:
            self_child = -1
            if contains_self:
                self_child = _select_child(point, midpoint[node])
            # Push in reverse so children are visited in increasing order
            for k in range(n_children - 1, -1, -1):
                if children[node, k] >= 0:
                    stack[top] = children[node, k]
                    on_path[top] = k == self_child
                    top += 1

    return sum_Q


class QuadTree:
    """Barnes-Hut space partitioning tree over a low-dimensional embedding.

    The tree is meant to be rebuilt whenever the points move, so the arena is
    allocated once and :meth:`build` reuses it on every call.

    Parameters
    ----------
    n_samples: int
        The number of points the tree will hold.

    n_dims: int
        The dimensionality of the points. Trees are supported for 1, 2 and 3
        dimensions.

    max_depth: int
        The maximum depth of the tree. Points that still share a leaf at this
        depth are merged into it, and the leaf then stands in for all of them
        with their mean position.

    Attributes
    ----------
    n_nodes: int
        The number of nodes currently in use.

    locations: np.ndarray
        For every point, the index of the leaf it was placed into.

    """

    def __init__(self, n_samples, n_dims=2, max_depth=7):
        if n_dims not in (1, 2, 3):
            raise ValueError(
                "Space partitioning trees support 1, 2 or 3 dimensions. Got %d."
                % n_dims
            )
        if max_depth < 0:
            raise ValueError("`max_depth` must be non-negative. Got %d." % max_depth)

        self.n_samples = n_samples
        self.n_dims = n_dims
        self.max_depth = max_depth
        self.n_children = 2 ** n_dims

        # Every insertion adds at most one node per level plus a sibling
        capacity = 1 + n_samples * (max_depth + 1)
        self.midpoint = np.zeros((capacity, n_dims), dtype=np.float64)
        self.halfwidth = np.zeros((capacity, n_dims), dtype=np.float64)
        self.center_of_mass = np.zeros((capacity, n_dims), dtype=np.float64)
        self.number = np.zeros(capacity, dtype=np.int64)
        self.is_leaf = np.ones(capacity, dtype=np.bool_)
        self.children = np.full((capacity, self.n_children), -1, dtype=np.int64)
        self.occupant = np.full(capacity, -1, dtype=np.int64)
        self.locations = np.zeros(n_samples, dtype=np.int64)

        self.stack_size = 1 + (max_depth + 1) * self.n_children
        self.n_nodes = 0
        self._embedding = None

    @classmethod
    def from_embedding(cls, embedding, max_depth=7):
        embedding = np.ascontiguousarray(embedding, dtype=np.float64)
        if embedding.ndim == 1:
            embedding = embedding[:, np.newaxis]
        tree = cls(embedding.shape[0], embedding.shape[1], max_depth=max_depth)
        tree.build(embedding)
        return tree

    def build(self, embedding):
        """Discard the current nodes and insert all the points in ``embedding``."""
        if embedding.shape != (self.n_samples, self.n_dims):
            raise ValueError(
                "The tree was allocated for %d points in %d dimensions, but got "
                "an embedding of shape %s."
                % (self.n_samples, self.n_dims, embedding.shape)
            )
        if self.n_samples == 0:
            self.n_nodes = 0
            return self

        self.n_nodes = _build(
            embedding,
            self.max_depth,
            self.midpoint,
            self.halfwidth,
            self.center_of_mass,
            self.number,
            self.is_leaf,
            self.children,
            self.occupant,
            self.locations,
        )
        self._embedding = embedding
        return self

    def compute_non_edge_forces(self, index, theta, out):
        """Approximate the repulsive forces acting on a point in the tree.

        Parameters
        ----------
        index: int
            The index of the point the tree was built on.

        theta: float
            The Barnes-Hut accuracy threshold. A node is summarized by its
            center of mass when its largest half width, seen from the point, is
            smaller than ``theta`` times the distance. ``theta=0`` always
            descends into the leaves and yields exact forces.

        out: np.ndarray
            Output vector of length ``n_dims``, overwritten with the
            unnormalized repulsive force.

        Returns
        -------
        float
            The point's contribution to the normalization term ``sum_Q``.

        """
        if self._embedding is None:
            raise RuntimeError("The tree must be built before it can be queried.")
        return non_edge_forces(
            self._embedding[index],
            index,
            theta,
            self.midpoint,
            self.halfwidth,
            self.center_of_mass,
            self.number,
            self.is_leaf,
            self.children,
            self.stack_size,
            out,
        )

    def compute_non_edge_forces_at(self, point, theta, out):
        """Approximate the repulsive forces at an arbitrary location.

        Same as :meth:`compute_non_edge_forces`, but for a coordinate that is
        not one of the points in the tree. A leaf holding a single point at
        exactly the queried location is skipped.

        """
        point = np.ascontiguousarray(point, dtype=np.float64)
        return non_edge_forces(
            point,
            -1,
            theta,
            self.midpoint,
            self.halfwidth,
            self.center_of_mass,
            self.number,
            self.is_leaf,
            self.children,
            self.stack_size,
            out,
        )

    def depth(self):
        """Compute the depth of the deepest node."""
        if self.n_nodes == 0:
            return 0
        depth, frontier = 0, [0]
        while True:
            frontier = [c for node in frontier for c in self.children[node] if c >= 0]
            if not frontier:
                return depth
            depth += 1

    def is_truncated(self):
        """Check whether any leaf had to absorb more than one point."""
        used = slice(0, self.n_nodes)
        return bool(np.any(self.is_leaf[used] & (self.number[used] > 1)))

    def __len__(self):
        return self.n_nodes
