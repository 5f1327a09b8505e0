"""
Markov chain Monte Carlo sampler for the hierarchical projection-motif mixture.

One sweep of the sampler consists of

- allocation update: Gibbs step for the motif of every neuron (free mode only)

- region probabilities: Metropolis-Hastings with Dirichlet proposals for every motif

- motif scales: random-walk Metropolis-Hastings on log(gamma)

- region-prior hyperparameters `alpha_h` and `h`

- weights: stick-breaking global weights given pooled occupancy and Dirichlet local weights

- concentrations `alpha` and `alpha_zero`

All proposal scales are adapted online (Robbins-Monro on the log scale) towards a target acceptance rate.
"""
import numpy as np
import pickle as pkl
import time
import warnings

from anndata import AnnData
from dataclasses import dataclass, asdict
from scipy.special import logsumexp
from tqdm.auto import tqdm
from typing import Optional, Tuple, Collection, Union, List, Callable

from hbmotif.model.config import PriorConfig, SamplerConfig
from hbmotif.model.mixture_model import MixtureModel, LatentState, log_dirichlet_pdf, sample_log_gamma, \
    sample_log_dirichlet, floor_simplex, Q_FLOOR
from hbmotif.util import projection_data as dat
from hbmotif.util import result_classes as res


@dataclass(frozen=True)
class Snapshot:
    """
    One retained MCMC state. Arrays are read-only copies.
    """
    iteration: int
    Z: np.ndarray
    q: np.ndarray
    gamma: np.ndarray
    omega: np.ndarray
    omega_local: np.ndarray
    alpha: float
    alpha_zero: float
    alpha_h: float
    h: np.ndarray
    log_joint: float
    n_occupied: int
    acc_q: np.ndarray
    acc_gamma: np.ndarray
    acc_alpha: float
    acc_alpha_zero: float
    acc_alpha_h: float
    acc_h: float


def _frozen(x: np.ndarray) -> np.ndarray:
    x = np.array(x, copy=True)
    x.setflags(write=False)
    return x


class AdaptiveProposal:
    """
    Proposal scales tuned by diminishing Robbins-Monro adaptation:
    ``log_scale += sign * rate * (t + 1) ** -0.6 * (accept_prob - target)``.

    `sign` is +1 for step sizes (larger scale = larger moves) and -1 for proposal concentrations.
    """

    def __init__(
            self,
            size: int,
            initial_scale: float,
            target: float,
            rate: float,
            sign: int = 1
    ):
        self.log_scale = np.repeat(np.log(initial_scale), size).astype(np.float64)
        self.target = target
        self.rate = rate
        self.sign = sign

    @property
    def scale(self) -> np.ndarray:
        return np.exp(self.log_scale)

    def adapt(
            self,
            accept_prob: Union[float, np.ndarray],
            t: int,
            index: Optional[int] = None
    ):
        step = self.sign * self.rate * (t + 1) ** -0.6 * (accept_prob - self.target)
        if index is None:
            self.log_scale += step
        else:
            self.log_scale[index] += step
        # keep scales in a numerically sane range
        np.clip(self.log_scale, -20., 20., out=self.log_scale)


class MCMCSampler:
    """
    Sampler for the hierarchical projection-motif mixture.

    Usage: ``result = MCMCSampler(data, J=20, config=SamplerConfig(number_iter=2000, burn_in=1000)).run()``

    The sampler owns its latent state and random number generator. ``run`` can be interrupted through
    `should_stop`, which is checked between sweeps; the result then only contains completed snapshots.

    Without `Z_init`, motif centres are random neurons. The chain can then stay in a state with merged clusters
    for many sweeps; the recommended entry point is ``hbmotif.util.motif_ana.MotifAnalysis`` with
    ``initialization="kmeans"``, which passes a k-means allocation as `Z_init`.
    """

    def __init__(
            self,
            data: AnnData,
            J: Optional[int] = None,
            prior: PriorConfig = PriorConfig(),
            config: SamplerConfig = SamplerConfig(),
            Z_init: Optional[Collection[int]] = None,
            fixed_partition: Optional[Collection[int]] = None,
            seed: Optional[int] = None
    ):
        """
        Sets up model, starting state and proposal adaptation.

        Parameters
        ----------
        data
            Projection data set, see ``hbmotif.util.projection_data``
        J
            Truncation level. Defaults to the number of motifs of `fixed_partition`
        prior
            Prior hyperparameters
        config
            Sampler settings
        Z_init
            Initial allocation, e.g. from k-means. Indices must lie in [0, J). Random motif centres if not given
        fixed_partition
            If given, the allocations are fixed to this partition (post-processing mode)
        seed
            Seed for the sampler's random number generator
        """

        config.validate()
        self.config = config
        self.model = MixtureModel(data, J=J, prior=prior, fixed_partition=fixed_partition)
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.state = self.model.initial_state(self.rng, Z_init)

        # Parameter families are only switched off in fixed-partition mode
        self.run_q_gamma = config.run_q_gamma or not self.model.is_fixed
        self.run_omega = config.run_omega or not self.model.is_fixed

        J, R = self.model.J, self.model.R
        rate = config.adaptive_prop
        self.prop_q = AdaptiveProposal(J, 100. * R, config.target_accept_q, rate, sign=-1)
        self.prop_gamma = AdaptiveProposal(J, 0.5, config.target_accept, rate)
        self.prop_alpha = AdaptiveProposal(1, 0.5, config.target_accept, rate)
        self.prop_alpha_zero = AdaptiveProposal(1, 0.5, config.target_accept, rate)
        self.prop_alpha_h = AdaptiveProposal(1, 0.5, config.target_accept, rate)
        self.prop_h = AdaptiveProposal(1, 100. * R, config.target_accept_q, rate, sign=-1)

        self.iteration = 0
        self.duration = 0.
        self.snapshots = []
        self._acc = self._empty_acceptance()
        self._acc_sum = {k: np.zeros_like(np.asarray(v, dtype=np.float64)) for k, v in self._acc.items()}
        self._acc_n = 0
        self._motif_ll = np.zeros(J)

    def _empty_acceptance(self) -> dict:
        J = self.model.J
        return {"q": np.full(J, np.nan), "gamma": np.full(J, np.nan), "alpha": np.nan,
                "alpha_zero": np.nan, "alpha_h": np.nan, "h": np.nan}

    def _accept(self, log_ratio: float) -> Tuple[bool, float]:
        """
        Metropolis-Hastings decision. Non-finite ratios (proposals outside the support) are rejected.
        """
        if not np.isfinite(log_ratio):
            if log_ratio == np.inf:
                return True, 1.
            return False, 0.
        accept_prob = float(np.exp(min(0., log_ratio)))
        return bool(np.log(self.rng.random()) < log_ratio), accept_prob

    def _propose_simplex(self, centre: np.ndarray, kappa: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Dirichlet(kappa * centre) proposal and its logarithm. The raw draw is returned unless an entry falls
        below Q_FLOOR; only then is it floored, and the proposal density is evaluated at the floored value.
        """
        log_new = sample_log_dirichlet(self.rng, kappa * centre)
        new = np.exp(log_new)
        if np.all(new >= Q_FLOOR):
            return new, log_new
        new = floor_simplex(new)
        return new, np.log(new)

    def _members(self) -> List[np.ndarray]:
        order = np.argsort(self.state.Z, kind="stable")
        bounds = np.searchsorted(self.state.Z[order], np.arange(self.model.J + 1))
        return [order[bounds[j]:bounds[j + 1]] for j in range(self.model.J)]

    # Updates

    def update_allocations(self):
        """
        Gibbs step for all allocations. The probability of motif j for neuron i is proportional to
        the local weight of j in the animal of i times the likelihood of i under j.
        Sampling uses the Gumbel-max trick in log-space.
        """
        model, state = self.model, self.state
        log_p = model.log_likelihood_matrix(state.q, state.gamma) + state.log_omega_local[model.animal]
        state.Z = np.argmax(log_p + self.rng.gumbel(size=log_p.shape), axis=1)

    def update_q(self, members: List[np.ndarray]):
        """
        Metropolis-Hastings update of the region probabilities of every motif with a Dirichlet proposal
        centred at the current value.
        """
        model, state = self.model, self.state
        t = self.iteration
        for j in range(model.J):
            q_old = state.q[j]
            kappa = self.prop_q.scale[j]
            q_new, log_q_new = self._propose_simplex(q_old, kappa)

            ll_new = model.motif_log_likelihood(members[j], q_new, state.gamma[j])
            log_q_old = np.log(q_old)
            log_ratio = (ll_new - self._motif_ll[j]
                         + log_dirichlet_pdf(log_q_new, state.alpha_h * state.h)
                         - log_dirichlet_pdf(log_q_old, state.alpha_h * state.h)
                         + log_dirichlet_pdf(log_q_old, kappa * q_new)
                         - log_dirichlet_pdf(log_q_new, kappa * q_old))

            accepted, accept_prob = self._accept(log_ratio)
            if accepted:
                state.q[j] = q_new
                self._motif_ll[j] = ll_new
            self._acc["q"][j] = accept_prob
            self.prop_q.adapt(accept_prob, t, index=j)

    def update_gamma(self, members: List[np.ndarray]):
        """
        Adaptive random-walk Metropolis-Hastings on log(gamma_j). Proposals not above `lb_gamma` are rejected.
        """
        model, state = self.model, self.state
        t = self.iteration
        lb = model.prior.lb_gamma
        for j in range(model.J):
            g_old = state.gamma[j]
            g_new = g_old * np.exp(self.prop_gamma.scale[j] * self.rng.standard_normal())

            if g_new <= lb:
                accepted, accept_prob = False, 0.
            else:
                ll_new = model.motif_log_likelihood(members[j], state.q[j], g_new)
                log_ratio = (ll_new - self._motif_ll[j]
                             + model.log_prior_gamma(g_new) - model.log_prior_gamma(g_old)
                             + np.log(g_new) - np.log(g_old))
                accepted, accept_prob = self._accept(float(log_ratio))
                if accepted:
                    state.gamma[j] = g_new
                    self._motif_ll[j] = ll_new
            self._acc["gamma"][j] = accept_prob
            self.prop_gamma.adapt(accept_prob, t, index=j)

    def update_region_prior(self):
        """
        Metropolis-Hastings updates of the concentration `alpha_h` (log random walk) and
        the base vector `h` (Dirichlet proposal) of the region-probability prior.
        """
        model, state = self.model, self.state
        t = self.iteration
        log_q = np.log(state.q)

        def q_term(alpha_h, h):
            return float(np.sum(log_dirichlet_pdf(log_q, alpha_h * h)))

        a_old = state.alpha_h
        a_new = a_old * np.exp(self.prop_alpha_h.scale[0] * self.rng.standard_normal())
        log_ratio = (q_term(a_new, state.h) - q_term(a_old, state.h)
                     + model.log_prior_alpha_h(a_new) - model.log_prior_alpha_h(a_old)
                     + np.log(a_new) - np.log(a_old))
        accepted, accept_prob = self._accept(log_ratio)
        if accepted:
            state.alpha_h = a_new
        self._acc["alpha_h"] = accept_prob
        self.prop_alpha_h.adapt(accept_prob, t)

        h_old = state.h
        kappa = self.prop_h.scale[0]
        h_new, log_h_new = self._propose_simplex(h_old, kappa)
        log_h_old = np.log(h_old)
        log_ratio = (q_term(state.alpha_h, h_new) - q_term(state.alpha_h, h_old)
                     + model.log_prior_h(h_new) - model.log_prior_h(h_old)
                     + log_dirichlet_pdf(log_h_old, kappa * h_new)
                     - log_dirichlet_pdf(log_h_new, kappa * h_old))
        accepted, accept_prob = self._accept(float(log_ratio))
        if accepted:
            state.h = h_new
        self._acc["h"] = accept_prob
        self.prop_h.adapt(accept_prob, t)

    def update_weights(self):
        """
        Updates global weights from the truncated stick-breaking posterior
        ``v_j ~ Beta(1 + n_j, alpha_zero + sum_{l>j} n_l)`` with occupancy counts `n` summed over animals,
        then local weights from their Dirichlet posterior given each animal's occupancy counts. All in log-space.
        """
        model, state = self.model, self.state
        J = model.J
        occupancy = model.occupancy(state.Z)

        if J == 1:
            state.log_omega = np.zeros(1)
        else:
            n = occupancy.sum(axis=0)
            later = np.append(np.cumsum(n[::-1])[::-1][1:], 0)
            log_a = sample_log_gamma(self.rng, 1. + n[:J - 1])
            log_b = sample_log_gamma(self.rng, state.alpha_zero + later[:J - 1])
            log_norm = np.logaddexp(log_a, log_b)
            log_v = log_a - log_norm
            log_rest = np.concatenate([[0.], np.cumsum(log_b - log_norm)])
            log_omega = np.empty(J)
            log_omega[:J - 1] = log_v + log_rest[:J - 1]
            log_omega[J - 1] = log_rest[J - 1]
            # renormalize against rounding
            state.log_omega = log_omega - logsumexp(log_omega)

        conc = np.exp(np.log(state.alpha) + state.log_omega)
        state.log_omega_local = sample_log_dirichlet(self.rng, conc[np.newaxis, :] + occupancy)

    def update_concentrations(self):
        """
        Random-walk Metropolis-Hastings on log(alpha) and log(alpha_zero).
        """
        model, state = self.model, self.state
        t = self.iteration

        a_old = state.alpha
        a_new = a_old * np.exp(self.prop_alpha.scale[0] * self.rng.standard_normal())
        log_ratio = (model.log_local_weights(state.log_omega_local, state.log_omega, a_new)
                     - model.log_local_weights(state.log_omega_local, state.log_omega, a_old)
                     + model.log_prior_alpha(a_new) - model.log_prior_alpha(a_old)
                     + np.log(a_new) - np.log(a_old))
        accepted, accept_prob = self._accept(log_ratio)
        if accepted:
            state.alpha = a_new
        self._acc["alpha"] = accept_prob
        self.prop_alpha.adapt(accept_prob, t)

        a0_old = state.alpha_zero
        a0_new = a0_old * np.exp(self.prop_alpha_zero.scale[0] * self.rng.standard_normal())
        log_ratio = (model.log_stick_breaking(state.log_omega, a0_new)
                     - model.log_stick_breaking(state.log_omega, a0_old)
                     + model.log_prior_alpha_zero(a0_new) - model.log_prior_alpha_zero(a0_old)
                     + np.log(a0_new) - np.log(a0_old))
        accepted, accept_prob = self._accept(log_ratio)
        if accepted:
            state.alpha_zero = a0_new
        self._acc["alpha_zero"] = accept_prob
        self.prop_alpha_zero.adapt(accept_prob, t)

    def sweep(self):
        """
        One full update of the latent state.
        """
        self._acc = self._empty_acceptance()
        if not self.model.is_fixed:
            self.update_allocations()

        if self.run_q_gamma:
            members = self._members()
            self._motif_ll = np.array([
                self.model.motif_log_likelihood(members[j], self.state.q[j], self.state.gamma[j])
                for j in range(self.model.J)
            ])
            self.update_q(members)
            self.update_gamma(members)
            self.update_region_prior()

        if self.run_omega:
            self.update_weights()
            self.update_concentrations()

        for k, v in self._acc.items():
            self._acc_sum[k] = self._acc_sum[k] + np.nan_to_num(np.asarray(v, dtype=np.float64))
        self._acc_n += 1

    def snapshot(self) -> Snapshot:
        state = self.state
        return Snapshot(
            iteration=self.iteration,
            Z=_frozen(state.Z),
            q=_frozen(state.q),
            gamma=_frozen(state.gamma),
            omega=_frozen(state.omega),
            omega_local=_frozen(state.omega_local),
            alpha=float(state.alpha),
            alpha_zero=float(state.alpha_zero),
            alpha_h=float(state.alpha_h),
            h=_frozen(state.h),
            log_joint=self.model.log_joint(state),
            n_occupied=int(len(np.unique(state.Z))),
            acc_q=_frozen(self._acc["q"]),
            acc_gamma=_frozen(self._acc["gamma"]),
            acc_alpha=float(self._acc["alpha"]),
            acc_alpha_zero=float(self._acc["alpha_zero"]),
            acc_alpha_h=float(self._acc["alpha_h"]),
            acc_h=float(self._acc["h"]),
        )

    def acceptance_rates(self) -> dict:
        """
        Mean acceptance probability of every Metropolis-Hastings parameter over all completed sweeps.
        Parameters that were not updated are NaN.
        """
        if self._acc_n == 0:
            return {k: np.nan for k in self._acc_sum}
        rates = {k: v / self._acc_n for k, v in self._acc_sum.items()}
        if not self.run_q_gamma:
            for k in ["q", "gamma", "alpha_h", "h"]:
                rates[k] = np.full_like(np.asarray(rates[k], dtype=np.float64), np.nan)
        if not self.run_omega:
            for k in ["alpha", "alpha_zero"]:
                rates[k] = np.nan
        return rates

    def run(
            self,
            should_stop: Optional[Callable[[], bool]] = None
    ) -> res.MotifResult:
        """
        Runs the chain until `number_iter` sweeps are completed or `should_stop` returns True.

        Parameters
        ----------
        should_stop
            Optional callable (e.g. ``threading.Event().is_set``), checked between sweeps

        Returns
        -------
        result object

        result
            Motif analysis result with all retained snapshots
        """
        config = self.config
        cancelled = False

        start = time.time()
        pbar = tqdm(total=config.number_iter, initial=self.iteration, disable=not config.verbose)
        while self.iteration < config.number_iter:
            if should_stop is not None and should_stop():
                cancelled = True
                break

            self.sweep()
            t = self.iteration
            if t >= config.burn_in and (t - config.burn_in) % config.thinning == 0:
                self.snapshots.append(self.snapshot())
            self.iteration += 1
            pbar.update(1)

            if config.auto_save and self.iteration % config.save_frequency == 0:
                self.save_checkpoint(config.save_path)
        pbar.close()
        self.duration += time.time() - start

        if config.verbose:
            if cancelled:
                print("MCMC sampling cancelled after {} sweeps.".format(self.iteration))
            print("MCMC sampling finished. ({:.3f} sec)".format(self.duration))
            rates = self.acceptance_rates()
            if self.run_q_gamma:
                print("Mean acceptance rate q: %0.1f%%, gamma: %0.1f%%" % (
                    100 * np.mean(rates["q"]), 100 * np.mean(rates["gamma"])))
            if self.run_omega:
                print("Acceptance rate alpha: %0.1f%%, alpha_zero: %0.1f%%" % (
                    100 * rates["alpha"], 100 * rates["alpha_zero"]))
        if len(self.snapshots) == 0:
            warnings.warn("No snapshots were retained. Increase number_iter or decrease burn_in.")

        return self.make_result(cancelled)

    def make_result(
            self,
            cancelled: bool = False
    ) -> res.MotifResult:
        """
        Result object generating function. Transforms the retained snapshots to a result object.

        Parameters
        ----------
        cancelled
            Whether sampling was stopped early

        Returns
        -------
        result object

        result
            Motif analysis result
        """
        model = self.model
        snaps = self.snapshots
        J, R, M, N = model.J, model.R, model.M, model.N

        def stack(name, shape, dtype=np.float64):
            if len(snaps) == 0:
                return np.zeros((0,) + shape, dtype=dtype)
            return np.stack([np.asarray(getattr(s, name), dtype=dtype) for s in snaps])

        posterior = {
            "Z": stack("Z", (N,), int),
            "q": stack("q", (J, R)),
            "gamma": stack("gamma", (J,)),
            "omega": stack("omega", (J,)),
            "omega_local": stack("omega_local", (M, J)),
            "alpha": stack("alpha", ()),
            "alpha_zero": stack("alpha_zero", ()),
            "alpha_h": stack("alpha_h", ()),
            "h": stack("h", (R,)),
        }
        sample_stats = {
            "iteration": stack("iteration", (), int),
            "log_joint": stack("log_joint", ()),
            "n_occupied": stack("n_occupied", (), int),
            "acc_q": stack("acc_q", (J,)),
            "acc_gamma": stack("acc_gamma", (J,)),
            "acc_alpha": stack("acc_alpha", ()),
            "acc_alpha_zero": stack("acc_alpha_zero", ()),
            "acc_alpha_h": stack("acc_alpha_h", ()),
            "acc_h": stack("acc_h", ()),
        }
        observed_data = {"y": model.y, "animal": model.animal}

        dims = {"Z": ["neuron"],
                "q": ["motif", "region"],
                "gamma": ["motif"],
                "omega": ["motif"],
                "omega_local": ["animal", "motif"],
                "h": ["region"],
                "acc_q": ["motif"],
                "acc_gamma": ["motif"],
                "y": ["neuron", "region"],
                "animal": ["neuron"],
                }
        coords = {"motif": np.arange(J),
                  "region": model.region_names,
                  "animal": np.arange(M),
                  "neuron": np.arange(N),
                  }

        sampling_stats = {"chain_length": self.config.number_iter,
                          "num_burnin": self.config.burn_in,
                          "thinning": self.config.thinning,
                          "iterations_completed": self.iteration,
                          "num_snapshots": len(snaps),
                          "duration": self.duration,
                          "cancelled": cancelled,
                          "acc_rate": self.acceptance_rates()}
        model_specs = {"J": J,
                       "fixed_partition": model.is_fixed,
                       "run_omega": self.run_omega,
                       "run_q_gamma": self.run_q_gamma,
                       "prior": asdict(model.prior),
                       "config": asdict(self.config),
                       "seed": self.seed}

        return res.make_result(posterior, sample_stats, observed_data, coords, dims, sampling_stats, model_specs)

    # Checkpointing

    def save_checkpoint(self, path: str):
        """
        Saves the full sampler (latent state, proposal adaptation, retained snapshots and RNG state)
        via pickle, such that sampling can be resumed with ``MCMCSampler.resume``.
        """
        with open(path, "wb") as f:
            pkl.dump(self, file=f, protocol=4)

    @classmethod
    def load_checkpoint(cls, path: str) -> "MCMCSampler":
        with open(path, "rb") as f:
            sampler = pkl.load(f)
        if not isinstance(sampler, cls):
            raise ValueError("{} does not contain an MCMCSampler checkpoint".format(path))
        return sampler

    @classmethod
    def resume(
            cls,
            path: str,
            should_stop: Optional[Callable[[], bool]] = None
    ) -> res.MotifResult:
        """
        Continues a checkpointed run until `number_iter` sweeps are completed.
        """
        sampler = cls.load_checkpoint(path)
        if sampler.config.verbose:
            print("Resuming MCMC sampling at sweep {}".format(sampler.iteration))
        return sampler.run(should_stop)


def post_process(
        data: AnnData,
        partition: Collection[int],
        prior: PriorConfig = PriorConfig(),
        config: SamplerConfig = SamplerConfig(),
        seed: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None
) -> res.MotifResult:
    """
    Fixed-partition re-fit. Runs the sampler with all allocations held at `partition`, such that
    motif parameters and weights have a unique labelling.

    Parameters
    ----------
    data
        Projection data set
    partition
        motif index of every neuron, usually a relabelled point estimate with motifs 0..K-1
    prior
        Prior hyperparameters
    config
        Sampler settings; `run_omega` and `run_q_gamma` select the updated parameter families
    seed
        Random seed
    should_stop
        Optional cancellation callable

    Returns
    -------
    result object

    result
        Motif analysis result of the fixed-partition run
    """
    partition = dat.validate_partition(partition, data.n_obs)
    n_empty = int(partition.max()) + 1 - len(np.unique(partition))
    if n_empty > 0:
        warnings.warn("Partition has {} empty motifs; their parameters are sampled from the prior.".format(n_empty))

    sampler = MCMCSampler(data, prior=prior, config=config, fixed_partition=partition, seed=seed)
    return sampler.run(should_stop)
