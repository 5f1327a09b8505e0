"""
Detection of prominent and variable motifs from a fixed-partition (post-processing) run.

- Prominent motifs have a global weight above a threshold with high posterior probability.

- Variable motifs have a larger across-animal variance of their local weights than expected when
  neurons are randomly reassigned to animals. The null distribution is built from independent
  fixed-partition runs on permuted animal labels, which can be evaluated in parallel.
"""
import numpy as np
import pandas as pd
import warnings

from anndata import AnnData
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import replace
from typing import Optional, Tuple, Collection, Union, List, Callable

from hbmotif.model.config import PriorConfig, SamplerConfig
from hbmotif.model.mcmc_sampler import MCMCSampler, post_process
from hbmotif.util import projection_data as dat
from hbmotif.util import result_classes as res


def prominent_motifs(
        result: res.MotifResult,
        threshold: float = 0.02,
        prob_level: float = 0.95
) -> pd.DataFrame:
    """
    Decides which motifs are prominent, i.e. have a global weight above `threshold` with posterior probability
    above `prob_level`.

    Parameters
    ----------
    result
        Result of a fixed-partition run
    threshold
        Minimal global weight
    prob_level
        Posterior probability required to call a motif prominent

    Returns
    -------
    DataFrame

    prominent_df
        One row per motif. Columns: "omega_mean", "prob_above", "prominent".
        ``attrs["min_neurons"]`` holds the number of neurons implied by `threshold`
    """
    if not 0 < prob_level < 1:
        raise ValueError("prob_level must be between 0 and 1!")
    if not 0 < threshold < 1:
        raise ValueError("threshold must be between 0 and 1!")

    omega = np.asarray(result.posterior["omega"])[0]
    if omega.shape[0] == 0:
        raise ValueError("Result contains no draws!")

    prob_above = np.mean(omega > threshold, axis=0)
    prominent_df = pd.DataFrame({
        "omega_mean": omega.mean(axis=0),
        "prob_above": prob_above,
        "prominent": prob_above > prob_level,
    }, index=pd.Index(result.posterior.coords["motif"].values, name="Motif"))

    n_neurons = result.counts().shape[0]
    prominent_df.attrs["min_neurons"] = int(np.round(threshold * n_neurons))
    prominent_df.attrs["threshold"] = threshold
    prominent_df.attrs["prob_level"] = prob_level

    return prominent_df


def local_weight_variance(result: res.MotifResult) -> np.ndarray:
    """
    Posterior mean of the variance of every motif's local weight across animals, size J
    """
    omega_local = np.asarray(result.posterior["omega_local"])[0]
    if omega_local.shape[0] == 0:
        raise ValueError("Result contains no draws!")
    return np.var(omega_local, axis=1).mean(axis=0)


def _permutation_worker(payload: dict) -> np.ndarray:
    """
    One null replicate: fixed-partition run on data with permuted animal labels.
    Top-level function, such that it can be sent to worker processes.
    """
    rng = np.random.default_rng(payload["seed"])
    data = payload["data"]
    permuted = dat.with_animal_labels(data, rng.permutation(dat.animal_index(data)))
    sampler = MCMCSampler(permuted, J=payload["J"], prior=payload["prior"], config=payload["config"],
                          fixed_partition=payload["partition"], seed=payload["seed"])
    return local_weight_variance(sampler.run())


def variable_motifs(
        data: AnnData,
        partition: Collection[int],
        result: Optional[res.MotifResult] = None,
        n_permutations: int = 100,
        alpha_level: float = 0.05,
        prior: PriorConfig = PriorConfig(),
        config: SamplerConfig = SamplerConfig(),
        seed: Optional[int] = None,
        workers: int = 1,
        should_stop: Optional[Callable[[], bool]] = None
) -> pd.DataFrame:
    """
    Permutation test for motifs whose local weights vary between animals.

    The observed statistic is the posterior mean across-animal variance of the local weights.
    Its null distribution is obtained from `n_permutations` fixed-partition runs on data with randomly
    permuted animal labels (animal sizes are preserved). Only weights are updated in these runs.

    Parameters
    ----------
    data
        Projection data set
    partition
        Fixed partition (motif index of every neuron)
    result
        Result of the fixed-partition run on the original data. Computed if not given.
        The null runs use the same truncation level as this result
    n_permutations
        Number of null replicates
    alpha_level
        Significance level; a motif is variable if its observed variance exceeds the (1 - alpha_level) null quantile
    prior
        Prior hyperparameters
    config
        Sampler settings for the null runs
    seed
        Random seed
    workers
        Number of worker processes. 1 runs all replicates in this process
    should_stop
        Optional cancellation callable, checked between replicates

    Returns
    -------
    DataFrame

    variable_df
        One row per motif. Columns: "observed_variance", "null_quantile", "p_value", "variable".
        ``attrs["n_completed"]`` is the number of finished null replicates
    """
    if not 0 < alpha_level < 1:
        raise ValueError("alpha_level must be between 0 and 1!")
    if n_permutations < 1:
        raise ValueError("n_permutations must be at least 1!")
    partition = dat.validate_partition(partition, data.n_obs)

    seed_seq = np.random.SeedSequence(seed)
    fit_seed, *replicate_seeds = [int(s.generate_state(1)[0]) for s in seed_seq.spawn(n_permutations + 1)]

    if result is None:
        result = post_process(data, partition, prior=prior, config=config, seed=fit_seed,
                              should_stop=should_stop)
    J = int(result.posterior.sizes["motif"])
    if J < int(partition.max()) + 1:
        raise ValueError("The result has {} motifs, but the partition uses {}!".format(J, int(partition.max()) + 1))
    observed = local_weight_variance(result)

    null_config = replace(config, run_q_gamma=False, run_omega=True, verbose=False, auto_save=False)
    payloads = [{"data": data, "partition": partition, "J": J, "prior": prior, "config": null_config, "seed": s}
                for s in replicate_seeds]

    null = []
    if workers <= 1:
        for payload in payloads:
            if should_stop is not None and should_stop():
                break
            null.append(_permutation_worker(payload))
    else:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_permutation_worker, p) for p in payloads]
            for fut in as_completed(futures):
                if should_stop is not None and should_stop():
                    for f in futures:
                        f.cancel()
                    break
                null.append(fut.result())

    n_completed = len(null)
    if n_completed == 0:
        warnings.warn("No null replicate was completed; no motif is called variable.")
        null_quantile = np.full(observed.shape, np.nan)
        p_value = np.full(observed.shape, np.nan)
        variable = np.zeros(observed.shape, dtype=bool)
    else:
        null = np.stack(null)
        null_quantile = np.quantile(null, 1 - alpha_level, axis=0)
        p_value = (1 + np.sum(null >= observed[np.newaxis, :], axis=0)) / (1 + n_completed)
        variable = observed > null_quantile

    variable_df = pd.DataFrame({
        "observed_variance": observed,
        "null_quantile": null_quantile,
        "p_value": p_value,
        "variable": variable,
    }, index=pd.Index(result.posterior.coords["motif"].values, name="Motif"))
    variable_df.attrs["n_completed"] = n_completed
    variable_df.attrs["alpha_level"] = alpha_level

    return variable_df
