"""
Posterior summaries of the allocation trace: co-clustering similarity, point-estimate partitions
and relabelling of motifs by their projection pattern.
"""
import numpy as np
import pandas as pd

from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform
from typing import Optional, Tuple, Collection, Union, List

from hbmotif.util import projection_data as dat
from hbmotif.util import result_classes as res


def _group_by_motif(z: np.ndarray) -> List[np.ndarray]:
    order = np.argsort(z, kind="stable")
    breaks = np.flatnonzero(np.diff(z[order])) + 1
    return np.split(order, breaks)


def similarity_matrix(
        allocations: Union[res.MotifResult, np.ndarray],
        animal: Optional[Collection[int]] = None
) -> Tuple[np.ndarray, List[np.ndarray]]:
    """
    Posterior similarity matrix: share of retained draws in which two neurons are allocated to the same motif.
    For each draw, neurons are grouped by motif and only within-motif pairs are incremented.

    Parameters
    ----------
    allocations
        Allocation trace (draws x neurons) or a ``MotifResult``
    animal
        Animal index of every neuron. Taken from the result if `allocations` is a ``MotifResult``

    Returns
    -------
    Combined and within-animal similarity matrices

    similarity
        NxN symmetric matrix with unit diagonal
    within
        list with one block per animal (neurons of that animal only)
    """
    if isinstance(allocations, res.MotifResult):
        if animal is None:
            animal = allocations.animal()
        allocations = allocations.allocations()

    allocations = np.atleast_2d(np.asarray(allocations, dtype=int))
    n_draws, n_neurons = allocations.shape
    if n_draws == 0:
        raise ValueError("Similarity matrix needs at least one draw!")

    similarity = np.zeros((n_neurons, n_neurons))
    for z in allocations:
        for group in _group_by_motif(z):
            similarity[np.ix_(group, group)] += 1.
    similarity /= n_draws

    if animal is None:
        animal = np.zeros(n_neurons, dtype=int)
    animal = np.asarray(animal, dtype=int)
    if animal.shape[0] != n_neurons:
        raise ValueError("Got {} animal labels for {} neurons".format(animal.shape[0], n_neurons))
    within = [similarity[np.ix_(idx, idx)] for idx in
              [np.flatnonzero(animal == m) for m in range(animal.max() + 1)]]

    return similarity, within


def _one_hot(partition: np.ndarray) -> np.ndarray:
    partition = dat.contiguous_labels(partition)
    one_hot = np.zeros((partition.shape[0], partition.max() + 1))
    one_hot[np.arange(partition.shape[0]), partition] = 1.
    return one_hot


def binder_loss(
        partition: Collection[int],
        similarity: np.ndarray
) -> float:
    """
    Sum of squared differences between the co-clustering indicator of `partition` and the similarity matrix,
    over all unordered neuron pairs.
    """
    one_hot = _one_hot(np.asarray(partition))
    sizes = one_hot.sum(axis=0)
    within = np.sum(one_hot * (similarity @ one_hot))
    total = np.sum(sizes ** 2) - 2 * within + np.sum(similarity ** 2)
    # diagonal entries contribute (1 - 1)^2 = 0; count each pair once
    return float(total / 2)


def vi_lower_bound_loss(
        partition: Collection[int],
        similarity: np.ndarray
) -> float:
    """
    Lower bound of the posterior expected variation of information (Wade and Ghahramani, 2018).
    """
    partition = dat.contiguous_labels(partition)
    one_hot = _one_hot(partition)
    n = partition.shape[0]
    sizes = one_hot.sum(axis=0)[partition]
    shared = (similarity @ one_hot)[np.arange(n), partition]
    totals = similarity.sum(axis=1)
    return float(np.sum(np.log2(sizes) - 2 * np.log2(shared) + np.log2(totals)) / n)


LOSSES = {"binder": binder_loss, "vi": vi_lower_bound_loss}


def hierarchical_candidates(
        similarity: np.ndarray,
        max_clusters: int,
        method: str = "average"
) -> List[np.ndarray]:
    """
    Partitions from hierarchical clustering of 1 - similarity, cut at 1..max_clusters clusters
    """
    n = similarity.shape[0]
    if n < 2:
        return [np.zeros(n, dtype=int)]
    dist = np.clip(1. - similarity, 0., None)
    np.fill_diagonal(dist, 0.)
    tree = linkage(squareform(dist, checks=False), method=method)
    return [fcluster(tree, t=k, criterion="maxclust") - 1 for k in range(1, min(max_clusters, n) + 1)]


def point_estimate(
        allocations: Union[res.MotifResult, np.ndarray],
        similarity: np.ndarray,
        max_clusters: Optional[int] = None,
        loss: str = "binder",
        hierarchical: bool = True
) -> np.ndarray:
    """
    Point estimate of the partition that minimizes a posterior expected loss with respect to the similarity matrix.
    Candidates are all retained draws with at most `max_clusters` motifs and, optionally,
    the cuts of an average-linkage tree of 1 - similarity.

    Parameters
    ----------
    allocations
        Allocation trace (draws x neurons) or a ``MotifResult``
    similarity
        Posterior similarity matrix, see ``similarity_matrix``
    max_clusters
        Maximal number of motifs of a candidate. Defaults to the largest number in the trace
    loss
        "binder" (squared co-clustering differences) or "vi" (lower bound of the variation of information)
    hierarchical
        Whether to add hierarchical clustering candidates

    Returns
    -------
    Optimal partition

    partition
        motif index of every neuron, labelled 0..K-1 in order of first appearance
    """
    if loss not in LOSSES:
        raise ValueError("Unknown loss {}, choose one of {}".format(loss, list(LOSSES.keys())))
    loss_fn = LOSSES[loss]

    if isinstance(allocations, res.MotifResult):
        allocations = allocations.allocations()
    allocations = np.atleast_2d(np.asarray(allocations, dtype=int))

    n_clusters = np.array([len(np.unique(z)) for z in allocations])
    if max_clusters is None:
        max_clusters = int(n_clusters.max()) if n_clusters.shape[0] > 0 else similarity.shape[0]

    candidates = {}
    for z, k in zip(allocations, n_clusters):
        if k <= max_clusters:
            z = dat.contiguous_labels(z)
            candidates.setdefault(z.tobytes(), z)
    if hierarchical:
        for z in hierarchical_candidates(similarity, max_clusters):
            z = dat.contiguous_labels(z)
            candidates.setdefault(z.tobytes(), z)

    if len(candidates) == 0:
        raise ValueError("No candidate partition with at most {} motifs".format(max_clusters))

    best, best_loss = None, np.inf
    for z in candidates.values():
        value = loss_fn(z, similarity)
        if value < best_loss:
            best, best_loss = z, value
    return best


def projection_strength(
        partition: Collection[int],
        counts: np.ndarray,
        region_names: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Mean projection strength (share of a neuron's counts) of every motif in every region.

    Parameters
    ----------
    partition
        motif index of every neuron
    counts
        neuron x region count matrix
    region_names
        Names of the regions

    Returns
    -------
    DataFrame

    strength_df
        one row per occupied motif, one column per region
    """
    partition = np.asarray(partition, dtype=int)
    strengths = dat.normalize_projections(counts)
    motifs = np.unique(partition)
    means = np.stack([strengths[partition == k].mean(axis=0) for k in motifs])
    if region_names is None:
        region_names = ["region_" + str(r) for r in range(strengths.shape[1])]
    return pd.DataFrame(means, index=pd.Index(motifs, name="Motif"), columns=region_names)


def relabel_by_projection(
        partition: Collection[int],
        counts: np.ndarray,
        region_names: Optional[List[str]] = None,
        threshold: float = 0.05
) -> Tuple[np.ndarray, pd.DataFrame]:
    """
    Renames motifs by their projection pattern.
    Motifs are ordered by their dominant region (in region order), then by decreasing mean strength in that region;
    remaining ties are broken by the smallest neuron index of the motif.
    Each motif is labelled by the regions whose mean projection strength exceeds `threshold`.

    Parameters
    ----------
    partition
        motif index of every neuron
    counts
        neuron x region count matrix
    region_names
        Names of the regions
    threshold
        Minimal mean strength for a region to appear in a motif label

    Returns
    -------
    New partition and motif labels

    new_partition
        motif index of every neuron, 0..K-1 in the new order
    labels
        DataFrame with one row per new motif: "label", "dominant region", "strength", "n_neurons"
    """
    partition = np.asarray(partition, dtype=int)
    strength_df = projection_strength(partition, counts, region_names)
    means = strength_df.values
    regions = np.array(strength_df.columns)

    keys = []
    for row, k in enumerate(strength_df.index):
        dominant = int(np.argmax(means[row]))
        keys.append((dominant, -means[row, dominant], int(np.flatnonzero(partition == k)[0]), k))
    keys.sort()

    mapping = {key[3]: new for new, key in enumerate(keys)}
    new_partition = np.array([mapping[k] for k in partition], dtype=int)

    labels = []
    for key in keys:
        row = strength_df.index.get_loc(key[3])
        above = regions[means[row] > threshold]
        labels.append({
            "label": ", ".join(above) if len(above) > 0 else "none",
            "dominant region": regions[key[0]],
            "strength": means[row, key[0]],
            "n_neurons": int(np.sum(partition == key[3])),
        })
    labels = pd.DataFrame(labels, index=pd.Index(np.arange(len(keys)), name="Motif"))

    return new_partition, labels
