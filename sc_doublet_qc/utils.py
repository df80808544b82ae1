import os

import dill
import numpy as np
import pandas as pd
import scipy.sparse as sp
import igraph as ig
import leidenalg
from sklearn.neighbors import NearestNeighbors


def effective_n_jobs(n_jobs):
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def make_symmetric(in_graph):
    """
    Ensure the input sparse matrix is symmetric by taking the elementwise maximum
    between the matrix and its transpose.
    """
    csr = sp.csr_matrix(in_graph)
    symmetric_csr = csr.maximum(csr.transpose())
    return symmetric_csr.tocoo()


def coo_matrix_to_igraph(coo_mat):
    """
    Convert a symmetric weighted COO matrix to an undirected igraph Graph.
    Only the upper triangle is read so that each edge is added once.
    """
    upper = sp.triu(sp.coo_matrix(coo_mat), k=1).tocoo()

    n_vertices = coo_mat.shape[0]
    g = ig.Graph(n_vertices, directed=False)
    g.add_edges(list(zip(upper.row.tolist(), upper.col.tolist())))
    g.es['weight'] = upper.data.tolist()
    return g


def perform_modularity_clustering(coo_mat, resolution_parameter=1.0, seed=123456):
    """
    Convert the COO matrix to an igraph graph and maximize modularity.

    Parameters:
      coo_mat: A symmetric scipy.sparse matrix holding edge weights.
      resolution_parameter: Resolution of the modularity objective (1.0 is
        plain modularity).
      seed: Seed for the partition optimizer.

    Returns:
      labels: Integer community label per node, numbered by decreasing size.
    """
    n = coo_mat.shape[0]
    if n == 0:
        return np.zeros(0, dtype=int)
    g = coo_matrix_to_igraph(coo_mat)
    if g.ecount() == 0:
        # no edges: every node is its own community
        return np.arange(n, dtype=int)

    # RB configuration at resolution 1.0 is Newman-Girvan modularity
    partition = leidenalg.find_partition(
        g,
        leidenalg.RBConfigurationVertexPartition,
        weights='weight',
        resolution_parameter=resolution_parameter,
        seed=seed,
    )

    labels = np.empty(g.vcount(), dtype=int)
    for cluster_idx, cluster in enumerate(partition):
        for node in cluster:
            labels[node] = cluster_idx
    return labels


def shared_neighbor_graph(embedding, k=10):
    """
    Build a rank-weighted shared-nearest-neighbour graph.

    Each cell's neighbour list holds itself at rank 0 followed by its ``k``
    nearest neighbours (Euclidean). Two cells are joined when their lists
    share at least one member; the weight is ``k - r / 2`` where ``r`` is the
    smallest sum of the shared member's ranks in the two lists. Only
    positive weights are kept.

    Returns:
      scipy.sparse.coo_matrix: symmetric weighted adjacency (no self edges).
    """
    embedding = np.asarray(embedding, dtype=float)
    n = embedding.shape[0]
    k = min(int(k), n - 1)
    if k < 1:
        return sp.coo_matrix((n, n))

    nbrs = NearestNeighbors(n_neighbors=k).fit(embedding)
    knn = nbrs.kneighbors(return_distance=False)
    members = np.hstack([np.arange(n)[:, None], knn])

    long_df = pd.DataFrame({
        "owner": np.repeat(np.arange(n), k + 1),
        "shared": members.ravel(),
        "rank": np.tile(np.arange(k + 1), n),
    })
    pairs = long_df.merge(long_df, on="shared", suffixes=("_a", "_b"))
    pairs = pairs[pairs["owner_a"] < pairs["owner_b"]]
    pairs = pairs.assign(rank_sum=pairs["rank_a"] + pairs["rank_b"])
    best = pairs.groupby(["owner_a", "owner_b"], sort=False)["rank_sum"].min().reset_index()
    weights = k - 0.5 * best["rank_sum"].to_numpy()
    keep = weights > 0

    rows = best["owner_a"].to_numpy()[keep]
    cols = best["owner_b"].to_numpy()[keep]
    upper = sp.coo_matrix((weights[keep], (rows, cols)), shape=(n, n))
    return make_symmetric(upper)


def snn_graph_and_communities(embedding, k=10, resolution=1.0, seed=123456):
    """
    Convenience wrapper to build an SNN graph and partition it.

    Returns:
      Tuple[scipy.sparse.coo_matrix, np.ndarray]: the graph and integer labels per node.
    """
    graph = shared_neighbor_graph(embedding, k=k)
    labels = perform_modularity_clustering(graph, resolution_parameter=resolution, seed=seed)
    return graph, labels


def save_result(obj, f):
    """Save a pipeline result to a file using dill."""
    with open(f, 'wb') as file:
        dill.dump(obj, file)


def load_result(f):
    """
    Load a pipeline result from a file using dill.
    """
    with open(f, 'rb') as file:
        result = dill.load(file)
    return result
