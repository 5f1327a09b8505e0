"""
Posterior predictive checks for the projection-motif model.

Replicate data sets are simulated from posterior draws and compared to the observed data via
the share of neurons without counts in every region (per animal) and the distribution of total counts per neuron.
Replicates can optionally be perturbed with dissection noise to emulate measurement artifacts.
"""
import numpy as np
import pandas as pd
import anndata as ad
import warnings

from anndata import AnnData
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Optional, Tuple, Collection, Union, List, Callable

from hbmotif.model.mixture_model import sample_log_dirichlet
from hbmotif.util import result_classes as res


def _noise_vector(
        noise_levels: Union[float, Collection[float]],
        n_regions: int
) -> np.ndarray:
    levels = np.broadcast_to(np.asarray(noise_levels, dtype=np.float64), (n_regions,)).copy()
    if np.any(levels < 0):
        raise ValueError("Noise levels must be nonnegative!")
    return levels


def add_dissection_noise(
        counts: np.ndarray,
        noise_levels: Union[float, Collection[float]],
        rng: np.random.Generator
) -> np.ndarray:
    """
    Perturbs counts with region-specific dissection noise.
    For a region with level e > 0, the count of neuron i becomes
    Poisson(y_ir * exp(e * xi - e^2 / 2) + e * n_i / R) with xi standard normal, i.e. a mean-one
    multiplicative log-normal error plus spill-over proportional to the neuron's total count.
    Regions with level 0 are unchanged.

    Parameters
    ----------
    counts
        neuron x region count matrix
    noise_levels
        noise level per region (or one level for all regions)
    rng
        random number generator

    Returns
    -------
    Noisy counts

    noisy
        neuron x region count matrix
    """
    counts = np.asarray(counts, dtype=np.float64)
    n_regions = counts.shape[1]
    levels = _noise_vector(noise_levels, n_regions)
    noisy = counts.copy()
    if not np.any(levels > 0):
        return noisy

    totals = counts.sum(axis=1, keepdims=True)
    factor = np.exp(levels * rng.standard_normal(counts.shape) - levels ** 2 / 2)
    rate = counts * factor + levels * totals / n_regions
    noisy_all = rng.poisson(rate).astype(np.float64)
    noisy[:, levels > 0] = noisy_all[:, levels > 0]
    return noisy


def simulate_counts(
        draw: dict,
        counts: np.ndarray,
        animal: np.ndarray,
        noise_levels: Union[float, Collection[float]] = 0.,
        mode: str = "conditional",
        rng: Optional[np.random.Generator] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Simulates one replicate count matrix from a posterior draw.

    Parameters
    ----------
    draw
        Posterior draw with keys "Z", "q", "gamma", "omega_local" (see ``MotifResult.posterior_draw``)
    counts
        observed neuron x region count matrix
    animal
        animal index of every neuron
    noise_levels
        dissection noise, see ``add_dissection_noise``
    mode
        "conditional": keep every neuron's allocation and total count.
        "marginal": draw allocations from the local weights and totals from the animal's observed totals
    rng
        random number generator

    Returns
    -------
    Simulated counts and allocations

    y_rep
        neuron x region count matrix
    z_rep
        motif of every simulated neuron
    """
    if rng is None:
        rng = np.random.default_rng()
    if mode not in ["conditional", "marginal"]:
        raise ValueError("mode must be 'conditional' or 'marginal', got {}".format(mode))

    counts = np.asarray(counts, dtype=np.float64)
    animal = np.asarray(animal, dtype=int)
    totals = counts.sum(axis=1).astype(np.int64)

    if mode == "conditional":
        z = np.asarray(draw["Z"], dtype=int)
        n = totals
    else:
        omega_local = np.asarray(draw["omega_local"])
        z = np.empty(counts.shape[0], dtype=int)
        n = np.empty(counts.shape[0], dtype=np.int64)
        for m in range(animal.max() + 1):
            idx = np.flatnonzero(animal == m)
            p = omega_local[m] / omega_local[m].sum()
            z[idx] = rng.choice(p.shape[0], size=idx.shape[0], p=p)
            n[idx] = rng.choice(totals[idx], size=idx.shape[0], replace=True)

    conc = np.asarray(draw["gamma"])[z, np.newaxis] * np.asarray(draw["q"])[z]
    p = np.exp(sample_log_dirichlet(rng, conc))
    p = p / p.sum(axis=1, keepdims=True)
    y_rep = rng.multinomial(n, p).astype(np.float64)

    return add_dissection_noise(y_rep, noise_levels, rng), z


def simulate_replicate(
        result: res.MotifResult,
        draw_index: Optional[int] = None,
        noise_levels: Union[float, Collection[float]] = 0.,
        mode: str = "conditional",
        seed: Optional[int] = None
) -> AnnData:
    """
    Simulates a replicate projection data set from one posterior draw of `result`.

    Parameters
    ----------
    result
        Motif analysis result
    draw_index
        Index of the posterior draw. Random if not given
    noise_levels
        dissection noise per region, see ``add_dissection_noise``
    mode
        "conditional" or "marginal", see ``simulate_counts``
    seed
        Random seed

    Returns
    -------
    A projection data set

    replicate
        AnnData object with the simulated counts and the allocations in ``obs["motif"]``
    """
    rng = np.random.default_rng(seed)
    if result.n_draws == 0:
        raise ValueError("Result contains no draws!")
    if draw_index is None:
        draw_index = int(rng.integers(result.n_draws))

    animal = result.animal()
    y_rep, z_rep = simulate_counts(result.posterior_draw(draw_index), result.counts(), animal,
                                   noise_levels, mode, rng)

    obs = pd.DataFrame({"animal": animal, "motif": z_rep})
    obs.index = obs.index.astype(str)
    var = pd.DataFrame(index=pd.Index(result.region_names(), name="region"))
    return ad.AnnData(X=y_rep, obs=obs, var=var, uns={"draw_index": draw_index, "mode": mode})


def zero_incidence(
        counts: np.ndarray,
        animal: Collection[int]
) -> np.ndarray:
    """
    Share of neurons with zero counts in every region, per animal (size MxR)
    """
    counts = np.asarray(counts)
    animal = np.asarray(animal, dtype=int)
    return np.stack([np.mean(counts[animal == m] == 0, axis=0) for m in range(animal.max() + 1)])


def total_count_histogram(
        counts: np.ndarray,
        bins: Union[int, np.ndarray] = 20
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Density histogram of log(1 + total count) per neuron.

    Returns
    -------
    densities and bin edges

    hist
        histogram densities
    edges
        bin edges on the log(1 + total) scale
    """
    log_totals = np.log1p(np.asarray(counts).sum(axis=1))
    hist, edges = np.histogram(log_totals, bins=bins)
    hist = hist / max(log_totals.shape[0], 1)
    return hist, edges


def _long_zero_df(
        observed: np.ndarray,
        simulated: dict,
        regions: List[str]
) -> pd.DataFrame:
    M, R = observed.shape
    zero_df = pd.DataFrame({
        "animal": np.repeat(np.arange(M), R),
        "region": np.tile(regions, M),
        "observed": observed.ravel(),
    })
    for k, v in simulated.items():
        zero_df[k] = v.ravel()
    return zero_df


def single_replicate_check(
        result: res.MotifResult,
        draw_index: Optional[int] = None,
        noise_levels: Union[float, Collection[float]] = 0.,
        mode: str = "conditional",
        bins: int = 20,
        seed: Optional[int] = None
) -> dict:
    """
    Compares observed data to one simulated replicate.

    Parameters
    ----------
    result
        Motif analysis result
    draw_index
        Index of the posterior draw. Random if not given
    noise_levels
        dissection noise per region
    mode
        "conditional" or "marginal"
    bins
        Number of histogram bins for total counts
    seed
        Random seed

    Returns
    -------
    Dict with comparison tables

    checks
        - "zero_incidence": DataFrame with columns "animal", "region", "observed", "simulated"
        - "total_counts": DataFrame with columns "bin_left", "bin_right", "observed", "simulated"
        - "replicate": the simulated data set
    """
    replicate = simulate_replicate(result, draw_index, noise_levels, mode, seed)
    y_obs, animal = result.counts(), result.animal()
    y_rep = np.asarray(replicate.X)

    zero_df = _long_zero_df(zero_incidence(y_obs, animal), {"simulated": zero_incidence(y_rep, animal)},
                            result.region_names())

    hist_obs, edges = total_count_histogram(y_obs, bins)
    hist_rep, _ = total_count_histogram(y_rep, edges)
    total_df = pd.DataFrame({"bin_left": edges[:-1], "bin_right": edges[1:],
                             "observed": hist_obs, "simulated": hist_rep})

    return {"zero_incidence": zero_df, "total_counts": total_df, "replicate": replicate}


def _replicate_worker(payload: dict) -> Tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(payload["seed"])
    y_rep, _ = simulate_counts(payload["draw"], payload["counts"], payload["animal"],
                               payload["noise_levels"], payload["mode"], rng)
    hist, _ = total_count_histogram(y_rep, payload["edges"])
    return zero_incidence(y_rep, payload["animal"]), hist


def multi_replicate_check(
        result: res.MotifResult,
        n_replicates: int = 100,
        noise_levels: Union[float, Collection[float]] = 0.,
        mode: str = "conditional",
        bins: int = 20,
        interval: float = 0.95,
        seed: Optional[int] = None,
        workers: int = 1,
        should_stop: Optional[Callable[[], bool]] = None
) -> dict:
    """
    Compares observed data to many replicates simulated from randomly chosen posterior draws.
    Replicates are independent and can be simulated in worker processes.

    Parameters
    ----------
    result
        Motif analysis result
    n_replicates
        Number of replicates
    noise_levels
        dissection noise per region
    mode
        "conditional" or "marginal"
    bins
        Number of histogram bins for total counts
    interval
        Width of the reported quantile band of the replicates
    seed
        Random seed
    workers
        Number of worker processes. 1 simulates all replicates in this process
    should_stop
        Optional cancellation callable, checked between replicates

    Returns
    -------
    Dict with comparison tables

    checks
        - "zero_incidence": DataFrame with columns "animal", "region", "observed", "mean", "lower", "upper"
        - "total_counts": DataFrame with columns "bin_left", "bin_right", "observed", "mean", "lower", "upper"
        - "n_completed": number of finished replicates. Replicate columns are NaN if none finished
    """
    if result.n_draws == 0:
        raise ValueError("Result contains no draws!")
    if not 0 < interval < 1:
        raise ValueError("interval must be between 0 and 1!")

    rng = np.random.default_rng(seed)
    y_obs, animal = result.counts(), result.animal()
    hist_obs, edges = total_count_histogram(y_obs, bins)
    draw_indices = rng.integers(result.n_draws, size=n_replicates)
    seeds = rng.integers(2 ** 32, size=n_replicates)

    payloads = [{"draw": result.posterior_draw(int(i)), "counts": y_obs, "animal": animal,
                 "noise_levels": noise_levels, "mode": mode, "edges": edges, "seed": int(s)}
                for i, s in zip(draw_indices, seeds)]

    outputs = []
    if workers <= 1:
        for payload in payloads:
            if should_stop is not None and should_stop():
                break
            outputs.append(_replicate_worker(payload))
    else:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_replicate_worker, p) for p in payloads]
            for fut in as_completed(futures):
                if should_stop is not None and should_stop():
                    for f in futures:
                        f.cancel()
                    break
                outputs.append(fut.result())

    zero_obs = zero_incidence(y_obs, animal)
    if len(outputs) == 0:
        warnings.warn("No replicate was completed; replicate summaries are NaN.")
        zeros = np.full((1,) + zero_obs.shape, np.nan)
        hists = np.full((1,) + hist_obs.shape, np.nan)
    else:
        zeros = np.stack([o[0] for o in outputs])
        hists = np.stack([o[1] for o in outputs])
    lo, hi = (1 - interval) / 2, 1 - (1 - interval) / 2

    zero_df = _long_zero_df(zero_obs, {
        "mean": zeros.mean(axis=0),
        "lower": np.quantile(zeros, lo, axis=0),
        "upper": np.quantile(zeros, hi, axis=0),
    }, result.region_names())

    total_df = pd.DataFrame({"bin_left": edges[:-1], "bin_right": edges[1:], "observed": hist_obs,
                             "mean": hists.mean(axis=0),
                             "lower": np.quantile(hists, lo, axis=0),
                             "upper": np.quantile(hists, hi, axis=0)})

    return {"zero_incidence": zero_df, "total_counts": total_df, "n_completed": len(outputs)}
