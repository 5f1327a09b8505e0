"""
Results class that summarizes MCMC runs of the projection-motif model.
This class extends the ``InferenceData`` class in the ``arviz`` package and can use all plotting and diagnostic
functionalities of it.

Additionally, this class can produce readable motif summaries and gives access to the allocation trace
and the sampler diagnostics.
"""
import numpy as np
import arviz as az
import pandas as pd
import pickle as pkl

from typing import Optional, Tuple, Collection, Union, List


def make_result(
        posterior: dict,
        sample_stats: dict,
        observed_data: dict,
        coords: dict,
        dims: dict,
        sampling_stats: dict,
        model_specs: dict
) -> "MotifResult":
    """
    Converts stacked snapshot arrays (first axis: draw) into a ``MotifResult`` with a single chain.

    Parameters
    ----------
    posterior
        Posterior variables, one array per variable with draws on the first axis
    sample_stats
        Per-draw sampler statistics
    observed_data
        Count data and animal indices
    coords
        Coordinates of named dimensions
    dims
        Dimension names of every variable
    sampling_stats
        Information about the sampling process
    model_specs
        Information about the model

    Returns
    -------
    result object

    result
        Motif analysis result
    """
    idata = az.from_dict(
        posterior={k: v[np.newaxis] for k, v in posterior.items()},
        sample_stats={k: v[np.newaxis] for k, v in sample_stats.items()},
        observed_data=observed_data,
        coords=coords,
        dims=dims,
    )
    return MotifResult(sampling_stats, model_specs,
                       **{group: getattr(idata, group) for group in idata.groups()})


class MotifResult(az.InferenceData):
    """
    Result class for the projection-motif model, extends the arviz framework for inference data.

    The MotifResult class is an extension of az.InferenceData, that adds information about the sampling
    process and the model, and is able to print readable motif summaries.
    It supports all functionality from az.InferenceData.
    """

    def __init__(
            self,
            sampling_stats: dict,
            model_specs: dict,
            **kwargs
    ):
        """
        Gathers sampling information from a sampler run and converts it to a ``az.InferenceData`` object.
        The following attributes are added during class initialization:

        ``self.sampling_stats``: dict - see below
        ``self.model_specs``: dict - see below

        Parameters
        ----------
        sampling_stats
            Information and statistics about the MCMC sampling procedure.
            Default keys:
            - "chain_length": Number of sweeps (with burn-in)
            - "num_burnin": Number of burn-in sweeps
            - "thinning": Thinning interval
            - "num_snapshots": Number of retained snapshots
            - "duration": Duration of MCMC sampling
            - "cancelled": Whether sampling was stopped early
            - "acc_rate": Mean acceptance rate of every Metropolis-Hastings parameter

        model_specs
            All information about the model specifications.
            Default keys:
            - "J": truncation level
            - "fixed_partition": whether allocations were fixed
            - "prior", "config": prior and sampler settings as dicts
        kwargs
            passed to az.InferenceData. This includes the MCMC chain states and statistics for each retained sample.
        """
        super().__init__(**kwargs)

        self.sampling_stats = sampling_stats
        self.model_specs = model_specs

    @property
    def n_draws(self) -> int:
        return int(self.posterior.sizes["draw"])

    def allocations(self) -> np.ndarray:
        """
        Allocation trace, size (draws x neurons)
        """
        return np.asarray(self.posterior["Z"])[0]

    def animal(self) -> np.ndarray:
        return np.asarray(self.observed_data["animal"])

    def counts(self) -> np.ndarray:
        return np.asarray(self.observed_data["y"])

    def region_names(self) -> List[str]:
        return [str(r) for r in self.posterior.coords["region"].values]

    def posterior_draw(
            self,
            i: int
    ) -> dict:
        """
        Parameters of one retained draw as dict of numpy arrays
        (keys "Z", "q", "gamma", "omega", "omega_local", "alpha", "alpha_zero", "alpha_h", "h").
        """
        return {k: np.asarray(self.posterior[k])[0, i] for k in self.posterior.data_vars}

    def occupied_trace(self) -> np.ndarray:
        """
        Number of occupied motifs in every retained draw
        """
        return np.asarray(self.sample_stats["n_occupied"])[0]

    def acceptance_rates(self) -> pd.DataFrame:
        """
        Per-motif mean acceptance rates of the region-probability and scale updates over the retained draws,
        plus the rates of the scalar parameters in ``attrs``.

        Returns
        -------
        DataFrame

        acc_df
            One row per motif with columns "q" and "gamma"
        """
        acc_q = np.asarray(self.sample_stats["acc_q"])[0]
        acc_gamma = np.asarray(self.sample_stats["acc_gamma"])[0]
        acc_df = pd.DataFrame({
            "q": np.mean(acc_q, axis=0) if acc_q.shape[0] > 0 else np.nan,
            "gamma": np.mean(acc_gamma, axis=0) if acc_gamma.shape[0] > 0 else np.nan,
        }, index=pd.Index(self.posterior.coords["motif"].values, name="Motif"))

        for name in ["alpha", "alpha_zero", "alpha_h", "h"]:
            values = np.asarray(self.sample_stats["acc_" + name])[0]
            acc_df.attrs[name] = float(np.mean(values)) if values.shape[0] > 0 else np.nan
        return acc_df

    def summary_prepare(
            self,
            *args,
            **kwargs
    ) -> pd.DataFrame:
        """
        Generates a summary DataFrame of the motifs.
        This function builds on and supports all functionalities from ``az.summary``.

        Parameters
        ----------
        args
            Passed to ``az.summary``
        kwargs
            Passed to ``az.summary``

        Returns
        -------
        Motif DataFrame

        motif_df -- pandas df
            Summary of motif parameters. Contains one row per motif.

            Columns:
            - Weight: Posterior mean of the global weight
            - HDI X%: Boundaries of the credible interval of the global weight (width specified via hdi_prob=)
            - Scale: Posterior mean of gamma
            - Occupancy: Mean number of allocated neurons
            - Dominant region: Region with the largest posterior mean probability
        """
        summ = az.summary(self, *args, **kwargs, kind="stats", var_names=["omega", "gamma"])
        hdis = summ.columns[summ.columns.str.contains("hdi")]

        motifs = self.posterior.coords["motif"].values
        omega_df = summ.loc[summ.index.str.match(r"omega\["), :]
        gamma_df = summ.loc[summ.index.str.match(r"gamma\["), :]

        Z = self.allocations()
        occupancy = np.array([np.mean(np.sum(Z == j, axis=1)) for j in motifs])
        q_mean = np.asarray(self.posterior["q"]).mean(axis=(0, 1))
        regions = np.array(self.region_names())

        motif_df = pd.DataFrame({
            "Weight": omega_df["mean"].values,
            hdis[0].replace("hdi_", "HDI "): omega_df[hdis[0]].values,
            hdis[1].replace("hdi_", "HDI "): omega_df[hdis[1]].values,
            "Scale": gamma_df["mean"].values,
            "Occupancy": occupancy,
            "Dominant region": regions[np.argmax(q_mean, axis=1)],
        }, index=pd.Index(motifs, name="Motif"))

        return motif_df

    def summary(
            self,
            *args,
            **kwargs
    ):
        """
        Printing method for the motif summary.

        Usage: ``result.summary()``

        Parameters
        ----------
        args
            Passed to az.summary
        kwargs
            Passed to az.summary

        Returns
        -------
        prints to console
        """
        motif_df = self.summary_prepare(*args, **kwargs)
        y = self.counts()

        print("Projection motif summary:")
        print("")
        print("Data: %d neurons, %d regions, %d animals" % (y.shape[0], y.shape[1], len(np.unique(self.animal()))))
        print("Truncation level: %d" % self.model_specs["J"])
        print("Fixed partition: %s" % str(self.model_specs["fixed_partition"]))
        print("")
        print("Motifs:")
        print(motif_df.loc[motif_df["Occupancy"] > 0])

    def summary_extended(
            self,
            *args,
            **kwargs
    ):
        """
        Extended (diagnostic) printing function that shows more info about the sampling result

        Parameters
        ----------
        args
            Passed to az.summary
        kwargs
            Passed to az.summary

        Returns
        -------
        Prints to console
        """
        motif_df = self.summary_prepare(*args, **kwargs)
        acc_df = self.acceptance_rates()
        n_occ = self.occupied_trace()

        print("Projection motif summary (extended):")
        print("")
        print("MCMC Sampling: Sampled {num_results} chain states ({num_burnin} burnin samples, thinning {thin}) "
              "in {duration:.3f} sec. Retained {n} draws.".format(num_results=self.sampling_stats["chain_length"],
                                                                  num_burnin=self.sampling_stats["num_burnin"],
                                                                  thin=self.sampling_stats["thinning"],
                                                                  duration=self.sampling_stats["duration"],
                                                                  n=self.sampling_stats["num_snapshots"]))
        if self.sampling_stats["cancelled"]:
            print("Sampling was cancelled after {} sweeps.".format(self.sampling_stats["iterations_completed"]))
        if n_occ.shape[0] > 0:
            print("Occupied motifs: mean {:.2f}, min {}, max {}".format(n_occ.mean(), n_occ.min(), n_occ.max()))
        print("Acceptance rates: " + ", ".join(
            "{}: {:.1f}%".format(k, 100 * v) for k, v in acc_df.attrs.items()))
        print("")
        print("Motifs:")
        print(motif_df.join(acc_df.rename(columns={"q": "Acc. q", "gamma": "Acc. gamma"})))

    def save(
            self,
            path_to_file: str
    ):
        """
        Function to save results to disk via pickle. Caution: Files can quickly become very large!

        Parameters
        ----------
        path_to_file
            saving location on disk

        Returns
        -------

        """
        with open(path_to_file, "wb") as f:
            pkl.dump(self, file=f, protocol=4)


def load(path_to_file: str) -> MotifResult:
    with open(path_to_file, "rb") as f:
        return pkl.load(f)
