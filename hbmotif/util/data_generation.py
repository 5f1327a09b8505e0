"""
Toolbox for simulating projection count data from multiple animals

The simulated data follows the projection-motif model: every motif ``j`` has region probabilities ``q[j]``
and a Dirichlet-multinomial scale ``gamma[j]``. Every animal ``m`` has local motif weights ``omega_local[m]``.

A neuron of animal ``m`` is allocated to a motif drawn from ``omega_local[m]``, receives a total barcode count
from a shifted Poisson distribution and distributes it over the regions via
``DirMult(n_total, gamma[j] * q[j])``.

The true parameters are stored in ``data.uns``, such that inference results can be compared to them.
"""

import numpy as np

from anndata import AnnData
from typing import Optional, Tuple, Collection, Union, List

from hbmotif.model.config import PriorConfig
from hbmotif.model.mixture_model import sample_log_dirichlet, floor_simplex
from hbmotif.util import projection_data as dat


def generate_projection_data(
        n_neurons: List[int],
        q: np.ndarray,
        gamma: np.ndarray,
        omega_local: np.ndarray,
        n_total_mean: float = 50.,
        region_names: Optional[List[str]] = None,
        seed: Optional[int] = None
) -> AnnData:
    """
    Generates projection counts of neurons from multiple animals.

    Parameters
    ----------
    n_neurons
        Number of neurons per animal, size M
    q
        Region probabilities of every motif, size JxR
    gamma
        Dirichlet-multinomial scale of every motif, size J
    omega_local
        Motif weights of every animal, size MxJ
    n_total_mean
        Mean total count per neuron. Totals are 1 + Poisson(n_total_mean - 1)
    region_names
        Names of the regions
    seed
        Random seed

    Returns
    -------
    A projection data set

    data
        AnnData object with ground truth in ``uns["q_true"]``, ``uns["gamma_true"]``, ``uns["Z_true"]``
    """
    rng = np.random.default_rng(seed)

    q = np.asarray(q, dtype=np.float64)
    gamma = np.asarray(gamma, dtype=np.float64)
    omega_local = np.atleast_2d(np.asarray(omega_local, dtype=np.float64))
    J, R = q.shape

    if gamma.shape != (J,):
        raise ValueError("gamma must have size J={}, got {}".format(J, gamma.shape))
    if omega_local.shape != (len(n_neurons), J):
        raise ValueError("omega_local must have size MxJ=({}, {}), got {}".format(len(n_neurons), J, omega_local.shape))
    if n_total_mean < 1:
        raise ValueError("n_total_mean must be at least 1!")

    matrices = []
    Z_true = []
    for m, n_m in enumerate(n_neurons):
        p_m = omega_local[m] / omega_local[m].sum()
        z = rng.choice(J, size=n_m, p=p_m)
        n_total = 1 + rng.poisson(n_total_mean - 1, size=n_m)

        # Dirichlet-multinomial as multinomial with Dirichlet-distributed probabilities
        p = np.exp(sample_log_dirichlet(rng, gamma[z, np.newaxis] * q[z]))
        p = p / p.sum(axis=1, keepdims=True)
        matrices.append(rng.multinomial(n_total, p))
        Z_true.append(z)

    data = dat.from_count_matrices(matrices, region_names=region_names)
    data.uns["q_true"] = q
    data.uns["gamma_true"] = gamma
    data.uns["omega_local_true"] = omega_local
    data.uns["Z_true"] = np.concatenate(Z_true)

    return data


def sample_model_parameters(
        J: int,
        R: int,
        M: int,
        prior: PriorConfig = PriorConfig(),
        rng: Optional[np.random.Generator] = None
) -> dict:
    """
    Draws one parameter set from the prior hierarchy of the model.

    Parameters
    ----------
    J
        Number of motifs
    R
        Number of regions
    M
        Number of animals
    prior
        Prior hyperparameters
    rng
        random number generator

    Returns
    -------
    Parameter dict

    params
        keys "q" (JxR), "gamma" (J), "omega" (J), "omega_local" (MxJ), "alpha", "alpha_zero", "alpha_h", "h" (R)
    """
    prior.validate()
    if rng is None:
        rng = np.random.default_rng()

    h = floor_simplex(np.exp(sample_log_dirichlet(rng, np.repeat(prior.nu, R))))
    alpha_h = rng.gamma(prior.a, 1 / prior.tau)
    q = floor_simplex(np.exp(sample_log_dirichlet(rng, np.broadcast_to(alpha_h * h, (J, R)))))

    # truncated Gamma by rejection
    gamma = np.empty(J)
    for j in range(J):
        g = rng.gamma(prior.a_gamma, 1 / prior.b_gamma)
        while g <= prior.lb_gamma:
            g = rng.gamma(prior.a_gamma, 1 / prior.b_gamma)
        gamma[j] = g

    alpha_zero = rng.gamma(prior.a_alpha0, 1 / prior.b_alpha0)
    v = rng.beta(1, alpha_zero, size=J - 1)
    omega = np.append(v, 1.) * np.concatenate([[1.], np.cumprod(1 - v)])
    omega = omega / omega.sum()

    alpha = rng.gamma(prior.a_alpha, 1 / prior.b_alpha)
    omega_local = np.exp(sample_log_dirichlet(rng, np.broadcast_to(alpha * omega, (M, J))))

    return {"q": q, "gamma": gamma, "omega": omega, "omega_local": omega_local,
            "alpha": alpha, "alpha_zero": alpha_zero, "alpha_h": alpha_h, "h": h}
