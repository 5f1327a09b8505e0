"""
Hierarchical Dirichlet-multinomial mixture model for neuron projection counts.

The model describes the barcode counts of every neuron as a draw from one of `J` projection motifs.
Motif weights are shared across animals through a truncated stick-breaking construction and perturbed
per animal, similar to a hierarchical Dirichlet process.

The hierarchical formulation of the model is:

.. math::
     \\omega &\\sim SB_J(\\alpha_0) \\\\
     \\omega_m &\\sim Dir(\\alpha \\omega) \\quad &\\forall m \\in [M] \\\\
     z_{i} &\\sim Cat(\\omega_{m(i)}) \\quad &\\forall i \\in [N] \\\\
     y_i | z_i = j &\\sim DirMult(n_i, \\gamma_j q_j) \\\\
     q_j &\\sim Dir(\\alpha_h h) \\quad &\\forall j \\in [J] \\\\
     h &\\sim Dir(\\nu 1_R) \\\\
     \\alpha_h &\\sim Gamma(a, \\tau) \\\\
     \\gamma_j &\\sim Gamma(a_\\gamma, b_\\gamma) \\mathbb{1}(\\gamma_j > lb_\\gamma) \\\\
     \\alpha &\\sim Gamma(a_\\alpha, b_\\alpha) \\\\
     \\alpha_0 &\\sim Gamma(a_{\\alpha_0}, b_{\\alpha_0}) \\\\

with y being the projection counts of neuron i, n_i its total count and m(i) its animal.
The total counts are conditioned on. A neuron without counts therefore has likelihood 1 under every motif.
"""
import numpy as np

from anndata import AnnData
from scipy import stats
from scipy.special import gammaln, logsumexp
from typing import Optional, Tuple, Collection, Union, List

from hbmotif.model.config import PriorConfig
from hbmotif.util import projection_data as dat

# Smallest Dirichlet/Gamma shape used in log-space sampling; smaller shapes are clipped.
TINY = 1e-300
# Floor for region probabilities of a motif, applied before renormalization.
Q_FLOOR = 1e-12


def log_dirichlet_pdf(
        log_x: np.ndarray,
        concentration: np.ndarray
) -> np.ndarray:
    """
    Log-density of a Dirichlet distribution, evaluated from the logarithm of the simplex point.
    Works along the last axis.

    Parameters
    ----------
    log_x
        logarithm of points on the simplex
    concentration
        Dirichlet concentration parameters (broadcastable to `log_x`)

    Returns
    -------
    log density

    lp
        log-density with the last axis removed
    """
    concentration = np.maximum(concentration, TINY)
    return (gammaln(np.sum(concentration, axis=-1))
            - np.sum(gammaln(concentration), axis=-1)
            + np.sum((concentration - 1) * log_x, axis=-1))


def sample_log_gamma(
        rng: np.random.Generator,
        shape: np.ndarray
) -> np.ndarray:
    """
    Logarithm of Gamma(shape, 1) draws that stays finite for very small shapes.
    For shape < 1, uses G(s) = G(s+1) * U^(1/s).
    """
    shape = np.maximum(np.asarray(shape, dtype=np.float64), TINY)
    small = shape < 1
    log_g = np.log(rng.gamma(np.where(small, shape + 1, shape)))
    log_u = np.log(rng.random(shape.shape))
    return np.where(small, log_g + log_u / shape, log_g)


def sample_log_dirichlet(
        rng: np.random.Generator,
        concentration: np.ndarray
) -> np.ndarray:
    """
    Logarithm of a Dirichlet draw along the last axis, computed via normalized log-Gamma variables.
    """
    log_g = sample_log_gamma(rng, concentration)
    return log_g - logsumexp(log_g, axis=-1, keepdims=True)


def floor_simplex(q: np.ndarray) -> np.ndarray:
    """
    Applies Q_FLOOR to probability vectors along the last axis and renormalizes.
    """
    q = np.maximum(q, Q_FLOOR)
    return q / np.sum(q, axis=-1, keepdims=True)


class LatentState:
    """
    Mutable latent state of the mixture model, updated in place by the sampler.

    - `Z`: motif allocation of every neuron, size N

    - `q`: region probabilities of every motif, size JxR

    - `gamma`: Dirichlet-multinomial scale of every motif, size J

    - `log_omega`: log global weights, size J

    - `log_omega_local`: log local weights, size MxJ

    - `alpha`, `alpha_zero`: local and global concentration

    - `alpha_h`, `h`: concentration and base vector of the region-probability prior
    """

    def __init__(
            self,
            Z: np.ndarray,
            q: np.ndarray,
            gamma: np.ndarray,
            log_omega: np.ndarray,
            log_omega_local: np.ndarray,
            alpha: float,
            alpha_zero: float,
            alpha_h: float,
            h: np.ndarray
    ):
        self.Z = Z
        self.q = q
        self.gamma = gamma
        self.log_omega = log_omega
        self.log_omega_local = log_omega_local
        self.alpha = alpha
        self.alpha_zero = alpha_zero
        self.alpha_h = alpha_h
        self.h = h

    @property
    def omega(self) -> np.ndarray:
        return np.exp(self.log_omega)

    @property
    def omega_local(self) -> np.ndarray:
        return np.exp(self.log_omega_local)

    def copy(self) -> "LatentState":
        return LatentState(
            Z=self.Z.copy(),
            q=self.q.copy(),
            gamma=self.gamma.copy(),
            log_omega=self.log_omega.copy(),
            log_omega_local=self.log_omega_local.copy(),
            alpha=self.alpha,
            alpha_zero=self.alpha_zero,
            alpha_h=self.alpha_h,
            h=self.h.copy(),
        )


class MixtureModel:
    """
    Generative model for projection counts of neurons from multiple animals.

    A `MixtureModel` holds the data and prior of one analysis and provides the likelihood and prior
    evaluations used by ``MCMCSampler``. It runs in one of two modes:

    - free mode: all allocations are latent and updated

    - fixed-partition mode: the allocations are given by `fixed_partition` and never change
    """

    def __init__(
            self,
            data: AnnData,
            J: Optional[int] = None,
            prior: PriorConfig = PriorConfig(),
            fixed_partition: Optional[Collection[int]] = None
    ):
        """
        Constructor of the model class. Checks data, truncation level and prior.

        Parameters
        ----------
        data
            Projection data set, see ``hbmotif.util.projection_data``
        J
            Truncation level (maximal number of motifs). Defaults to the number of motifs in `fixed_partition`
        prior
            Prior hyperparameters
        fixed_partition
            If given, motif index of every neuron. The model is then run in fixed-partition mode
        """

        prior.validate()
        self.prior = prior

        self.y = dat.counts(data)
        self.animal = dat.animal_index(data)
        self.region_names = dat.region_names(data)

        self.N, self.R = self.y.shape
        self.M = int(self.animal.max()) + 1
        self.animal_sizes = np.bincount(self.animal, minlength=self.M)
        if np.any(self.animal_sizes == 0):
            raise ValueError("Animal indices must be 0..M-1 without gaps!")

        self.n_total = self.y.sum(axis=1)
        # log multinomial coefficient, identical for all motifs
        self.log_coef = gammaln(self.n_total + 1) - np.sum(gammaln(self.y + 1), axis=1)
        self.nonzero = self.y > 0

        if fixed_partition is not None:
            fixed_partition = dat.validate_partition(fixed_partition, self.N)
            if J is None:
                J = int(fixed_partition.max()) + 1
            fixed_partition = dat.validate_partition(fixed_partition, self.N, J)
        elif J is None:
            raise ValueError("The truncation level J is required without a fixed partition!")

        if J < 1:
            raise ValueError("Truncation level J must be at least 1, got {}".format(J))

        self.J = int(J)
        self.fixed_partition = fixed_partition

    @property
    def is_fixed(self) -> bool:
        return self.fixed_partition is not None

    def log_likelihood(
            self,
            neuron: int,
            motif: int,
            state: LatentState
    ) -> float:
        """
        Log-probability of the counts of one neuron under one motif.

        Parameters
        ----------
        neuron
            neuron index
        motif
            motif index
        state
            current latent state

        Returns
        -------
        log-likelihood

        ll
            Dirichlet-multinomial log-probability, 0 for a neuron without counts
        """
        conc = state.gamma[motif] * state.q[motif]
        y_i = self.y[neuron]
        return float(self.log_coef[neuron]
                     + gammaln(state.gamma[motif]) - gammaln(self.n_total[neuron] + state.gamma[motif])
                     + np.sum(gammaln(y_i + conc) - gammaln(conc)))

    def log_likelihood_matrix(
            self,
            q: np.ndarray,
            gamma: np.ndarray,
            neurons: Optional[np.ndarray] = None,
            include_coef: bool = False
    ) -> np.ndarray:
        """
        Log-likelihood of every neuron under every motif.

        Parameters
        ----------
        q
            region probabilities, size JxR
        gamma
            motif scales, size J
        neurons
            optional subset of neuron indices
        include_coef
            Whether to add the multinomial coefficient (constant over motifs)

        Returns
        -------
        log-likelihood matrix

        ll
            size NxJ (or len(neurons)xJ)
        """
        y = self.y if neurons is None else self.y[neurons]
        n_total = self.n_total if neurons is None else self.n_total[neurons]

        conc = gamma[:, np.newaxis] * q
        ll = gammaln(gamma)[np.newaxis, :] - gammaln(n_total[:, np.newaxis] + gamma[np.newaxis, :])
        ll = ll + np.sum(gammaln(y[:, np.newaxis, :] + conc[np.newaxis, :, :])
                         - gammaln(conc)[np.newaxis, :, :], axis=2)

        if include_coef:
            coef = self.log_coef if neurons is None else self.log_coef[neurons]
            ll = ll + coef[:, np.newaxis]
        return ll

    def motif_log_likelihood(
            self,
            members: np.ndarray,
            q_j: np.ndarray,
            gamma_j: float
    ) -> float:
        """
        Summed log-likelihood (without multinomial coefficients) of the neurons allocated to one motif.
        Returns 0 for an empty motif.
        """
        if members.shape[0] == 0:
            return 0.
        y = self.y[members]
        conc = gamma_j * q_j
        return float(members.shape[0] * gammaln(gamma_j)
                     - np.sum(gammaln(self.n_total[members] + gamma_j))
                     + np.sum(gammaln(y + conc)) - members.shape[0] * np.sum(gammaln(conc)))

    def allocated_log_likelihood(
            self,
            state: LatentState
    ) -> float:
        """
        Log-likelihood of all counts given the current allocations.
        """
        conc = state.gamma[state.Z, np.newaxis] * state.q[state.Z]
        g = state.gamma[state.Z]
        return float(np.sum(self.log_coef + gammaln(g) - gammaln(self.n_total + g)
                            + np.sum(gammaln(self.y + conc) - gammaln(conc), axis=1)))

    # Priors

    def log_prior_q(
            self,
            q: np.ndarray,
            alpha_h: float,
            h: np.ndarray
    ) -> np.ndarray:
        return log_dirichlet_pdf(np.log(q), alpha_h * h)

    def log_prior_gamma(self, gamma: Union[float, np.ndarray]) -> np.ndarray:
        gamma = np.asarray(gamma, dtype=np.float64)
        lp = stats.gamma.logpdf(gamma, a=self.prior.a_gamma, scale=1 / self.prior.b_gamma)
        return np.where(gamma > self.prior.lb_gamma, lp, -np.inf)

    def log_prior_alpha(self, alpha: float) -> float:
        return float(stats.gamma.logpdf(alpha, a=self.prior.a_alpha, scale=1 / self.prior.b_alpha))

    def log_prior_alpha_zero(self, alpha_zero: float) -> float:
        return float(stats.gamma.logpdf(alpha_zero, a=self.prior.a_alpha0, scale=1 / self.prior.b_alpha0))

    def log_prior_alpha_h(self, alpha_h: float) -> float:
        return float(stats.gamma.logpdf(alpha_h, a=self.prior.a, scale=1 / self.prior.tau))

    def log_prior_h(self, h: np.ndarray) -> float:
        return float(log_dirichlet_pdf(np.log(h), np.repeat(self.prior.nu, self.R)))

    def log_stick_breaking(
            self,
            log_omega: np.ndarray,
            alpha_zero: float
    ) -> float:
        """
        Log-density of the stick-breaking fractions v_1..v_{J-1} ~ Beta(1, alpha_zero) that produce `log_omega`.
        The product of (1 - v_j) telescopes to the last weight.
        """
        if alpha_zero <= 0:
            return -np.inf
        return float((self.J - 1) * np.log(alpha_zero) + (alpha_zero - 1) * log_omega[-1])

    def log_local_weights(
            self,
            log_omega_local: np.ndarray,
            log_omega: np.ndarray,
            alpha: float
    ) -> float:
        """
        Summed Dirichlet log-density of the local weights of all animals given the global weights.
        """
        if alpha <= 0:
            return -np.inf
        conc = np.exp(np.log(alpha) + log_omega)
        return float(np.sum(log_dirichlet_pdf(log_omega_local, conc[np.newaxis, :])))

    def log_joint(self, state: LatentState) -> float:
        """
        Unnormalized log posterior density of the current state.
        """
        log_omega_z = state.log_omega_local[self.animal, state.Z]
        lp = self.allocated_log_likelihood(state) + float(np.sum(log_omega_z))
        lp += float(np.sum(self.log_prior_q(state.q, state.alpha_h, state.h)))
        lp += float(np.sum(self.log_prior_gamma(state.gamma)))
        lp += self.log_local_weights(state.log_omega_local, state.log_omega, state.alpha)
        lp += self.log_stick_breaking(state.log_omega, state.alpha_zero)
        lp += self.log_prior_alpha(state.alpha) + self.log_prior_alpha_zero(state.alpha_zero)
        lp += self.log_prior_alpha_h(state.alpha_h) + self.log_prior_h(state.h)
        return lp

    def occupancy(self, Z: np.ndarray) -> np.ndarray:
        """
        Number of neurons of every animal allocated to every motif, size MxJ
        """
        occ = np.zeros((self.M, self.J), dtype=int)
        np.add.at(occ, (self.animal, Z), 1)
        return occ

    def initial_state(
            self,
            rng: np.random.Generator,
            Z_init: Optional[Collection[int]] = None
    ) -> LatentState:
        """
        MCMC starting values.

        With a fixed partition or `Z_init`, motif region probabilities start at the smoothed mean projection
        profile of their neurons. Otherwise, J neurons with counts are picked at random as motif centres and
        every neuron is allocated to its most likely centre.

        Parameters
        ----------
        rng
            random number generator
        Z_init
            optional initial allocation (e.g. from k-means), ignored in fixed-partition mode

        Returns
        -------
        A latent state

        state
            starting state
        """
        prior = self.prior
        gamma = np.repeat(max(prior.a_gamma / prior.b_gamma, prior.lb_gamma + 1.), self.J)
        h = np.repeat(1. / self.R, self.R)
        alpha_h = prior.a / prior.tau

        if self.is_fixed:
            Z_init = self.fixed_partition
        elif Z_init is not None:
            Z_init = dat.validate_partition(Z_init, self.N, self.J)

        strengths = dat.normalize_projections(self.y)
        if Z_init is not None:
            Z = np.asarray(Z_init, dtype=int).copy()
            q = np.exp(sample_log_dirichlet(rng, np.broadcast_to(alpha_h * h, (self.J, self.R))))
            for j in range(self.J):
                members = Z == j
                if np.any(members):
                    q[j] = strengths[members].mean(axis=0) + 0.5 / self.R
                    q[j] = q[j] / q[j].sum()
            q = floor_simplex(q)
        else:
            with_counts = np.where(self.n_total > 0)[0]
            if with_counts.shape[0] == 0:
                raise ValueError("All neurons have zero counts!")
            centres = rng.choice(with_counts, size=self.J, replace=with_counts.shape[0] < self.J)
            q = self.y[centres] + 0.5
            q = floor_simplex(q / q.sum(axis=1, keepdims=True))
            Z = np.argmax(self.log_likelihood_matrix(q, gamma), axis=1)

        occ = self.occupancy(Z)
        omega = (occ.sum(axis=0) + 1.) / (self.N + self.J)
        omega_local = (occ + 1.) / (self.animal_sizes[:, np.newaxis] + self.J)

        return LatentState(
            Z=Z,
            q=q,
            gamma=gamma,
            log_omega=np.log(omega),
            log_omega_local=np.log(omega_local),
            alpha=prior.a_alpha / prior.b_alpha,
            alpha_zero=prior.a_alpha0 / prior.b_alpha0,
            alpha_h=alpha_h,
            h=h,
        )
