"""
Helper functions to convert barcode projection counts into a projection data set.

A projection data set is an ``AnnData`` object with one row per neuron:

- ``data.X``: neuron x region count matrix (nonnegative integer counts, stored as float64)
- ``data.obs["animal"]``: integer index of the animal each neuron belongs to
- ``data.var``: one row per target region, indexed by region name

Neurons of all animals are concatenated in animal order.
"""
import numpy as np
import pandas as pd
import anndata as ad

from anndata import AnnData
from typing import Optional, Tuple, Collection, Union, List, Mapping


def _check_counts(
        counts: np.ndarray,
        name: str
) -> np.ndarray:

    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 2:
        raise ValueError("Count matrix of {} must be two-dimensional, got shape {}".format(name, counts.shape))
    if np.any(~np.isfinite(counts)):
        raise ValueError("Count matrix of {} contains non-finite values!".format(name))
    if np.any(counts < 0):
        raise ValueError("Count matrix of {} contains negative counts!".format(name))
    if np.any(counts != np.round(counts)):
        raise ValueError("Count matrix of {} contains non-integer counts!".format(name))
    return counts


def from_count_matrices(
        matrices: Union[Mapping[int, np.ndarray], List[np.ndarray]],
        region_names: Optional[List[str]] = None
) -> AnnData:
    """
    Creates a projection data set from one count matrix per animal.

    Usage:

    ``data = from_count_matrices({0: counts_mouse_1, 1: counts_mouse_2}, region_names=["OB", "ACA", "AUD"])``

    Parameters
    ----------
    matrices
        Mapping from animal index to neuron x region count matrix, or a list of such matrices (animal index = position).
        Animals are ordered by their index.
    region_names
        Names of the target regions. Defaults to "region_0", "region_1", ...

    Returns
    -------
    A projection data set

    data
        AnnData object with counts in ``X`` and animal indices in ``obs["animal"]``
    """

    if isinstance(matrices, Mapping):
        keys = sorted(matrices.keys())
        mats = [matrices[k] for k in keys]
    else:
        mats = list(matrices)
        keys = list(range(len(mats)))

    if len(mats) == 0:
        raise ValueError("At least one animal is required!")

    mats = [_check_counts(m, "animal {}".format(k)) for k, m in zip(keys, mats)]

    n_regions = mats[0].shape[1]
    for k, m in zip(keys, mats):
        if m.shape[1] != n_regions:
            raise ValueError("Wrong input dimensions: animal {} has {} regions, expected {}".format(
                k, m.shape[1], n_regions))

    if region_names is None:
        region_names = ["region_" + str(r) for r in range(n_regions)]
    if len(region_names) != n_regions:
        raise ValueError("Got {} region names for {} regions".format(len(region_names), n_regions))

    # animals are renumbered 0..M-1 in the order of their keys
    animal = np.concatenate([np.repeat(m_ind, m.shape[0]) for m_ind, m in enumerate(mats)])
    obs = pd.DataFrame({"animal": animal.astype(int)})
    obs.index = obs.index.astype(str)

    var = pd.DataFrame(index=pd.Index([str(r) for r in region_names], name="region"))
    counts = np.concatenate(mats, axis=0)
    var["n_counts"] = counts.sum(axis=0)

    return ad.AnnData(X=counts, obs=obs, var=var, uns={"animal_keys": list(keys)})


def from_pandas(
        df: pd.DataFrame,
        animal_column: str
) -> AnnData:
    """
    Converts a pandas DataFrame with one row per neuron into a projection data set.
    All columns except `animal_column` are interpreted as target regions.
    Rows are sorted by animal (stable), so that neurons are concatenated in animal order.

    Parameters
    ----------
    df
        DataFrame with one row per neuron
    animal_column
        Name of the column that identifies the animal of each neuron

    Returns
    -------
    A projection data set

    data
        AnnData object
    """

    if animal_column not in df.columns:
        raise ValueError("Column {} not found in DataFrame!".format(animal_column))

    region_names = [c for c in df.columns if c != animal_column]
    matrices = {
        key: group.loc[:, region_names].values
        for key, group in df.groupby(animal_column, sort=True)
    }

    return from_count_matrices(matrices, region_names=region_names)


def counts(data: AnnData) -> np.ndarray:
    """
    Dense neuron x region count matrix of a projection data set
    """
    x = data.X
    if hasattr(x, "toarray"):
        x = x.toarray()
    return np.asarray(x, dtype=np.float64)


def animal_index(data: AnnData) -> np.ndarray:
    """
    Animal index of every neuron
    """
    if "animal" not in data.obs.columns:
        raise ValueError("Projection data needs an 'animal' column in data.obs!")
    return np.asarray(data.obs["animal"], dtype=int)


def animal_sizes(data: AnnData) -> np.ndarray:
    """
    Number of neurons per animal
    """
    animal = animal_index(data)
    return np.bincount(animal, minlength=animal.max() + 1)


def region_names(data: AnnData) -> List[str]:
    return data.var.index.to_list()


def split_by_animal(data: AnnData) -> List[np.ndarray]:
    """
    Splits a projection data set into one count matrix per animal.

    Parameters
    ----------
    data
        A projection data set

    Returns
    -------
    List of count matrices

    matrices
        list with one neuron x region matrix per animal
    """
    y = counts(data)
    animal = animal_index(data)
    return [y[animal == m] for m in range(animal.max() + 1)]


def normalize_projections(
        counts_matrix: np.ndarray
) -> np.ndarray:
    """
    Converts counts to projection strengths: proportions of each neuron's total count.
    Neurons without any counts keep a row of zeros.

    Parameters
    ----------
    counts_matrix
        neuron x region count matrix

    Returns
    -------
    Normalized matrix

    strengths
        neuron x region matrix with rows summing to 1 (or 0 for empty neurons)
    """
    counts_matrix = np.asarray(counts_matrix, dtype=np.float64)
    totals = counts_matrix.sum(axis=1, keepdims=True)
    return np.divide(counts_matrix, totals, out=np.zeros_like(counts_matrix), where=totals > 0)


def with_animal_labels(
        data: AnnData,
        animal: Collection[int]
) -> AnnData:
    """
    Copy of a projection data set with neurons assigned to different animals.
    The neuron order is kept, such that a fixed partition stays valid.

    Parameters
    ----------
    data
        A projection data set
    animal
        New animal index of every neuron

    Returns
    -------
    A projection data set

    data_new
        copy of `data` with replaced ``obs["animal"]``
    """
    animal = np.asarray(animal, dtype=int)
    if animal.shape[0] != data.n_obs:
        raise ValueError("Got {} animal labels for {} neurons".format(animal.shape[0], data.n_obs))
    data_new = data.copy()
    data_new.obs["animal"] = animal
    return data_new


def validate_partition(
        partition: Collection[int],
        n_neurons: int,
        J: Optional[int] = None
) -> np.ndarray:
    """
    Checks a partition (one motif index per neuron).

    Parameters
    ----------
    partition
        motif index of every neuron
    n_neurons
        expected number of neurons
    J
        truncation level. If given, all indices must lie in [0, J) and J must not be smaller than
        the number of distinct motifs.

    Returns
    -------
    The partition as integer array

    partition
        numpy array of ints
    """
    partition = np.asarray(partition)
    if partition.ndim != 1 or partition.shape[0] != n_neurons:
        raise ValueError("Partition must have one entry per neuron ({}), got shape {}".format(
            n_neurons, partition.shape))
    if not np.all(partition == np.round(partition)):
        raise ValueError("Partition contains non-integer motif indices!")
    partition = partition.astype(int)
    if np.any(partition < 0):
        raise ValueError("Partition contains negative motif indices!")
    if J is not None:
        n_distinct = len(np.unique(partition))
        if J < n_distinct:
            raise ValueError("Truncation level J={} is smaller than the number of motifs in the partition ({})".format(
                J, n_distinct))
        if np.any(partition >= J):
            raise ValueError("Partition contains motif indices >= J={}".format(J))
    return partition


def contiguous_labels(partition: Collection[int]) -> np.ndarray:
    """
    Renames motifs to 0..K-1 in order of first appearance
    """
    partition = np.asarray(partition, dtype=int)
    _, first, inverse = np.unique(partition, return_index=True, return_inverse=True)
    order = np.argsort(np.argsort(first))
    return order[inverse].astype(int)
