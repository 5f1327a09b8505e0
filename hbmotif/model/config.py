"""
Configuration objects for the hierarchical projection-motif model.

Prior hyperparameters and sampler settings are kept in frozen dataclasses that are passed by value
into the sampler and the downstream analyses. Use ``dataclasses.replace`` to derive a modified copy.
"""
from dataclasses import dataclass, fields
from typing import Optional


@dataclass(frozen=True)
class PriorConfig:
    """
    Prior hyperparameters.

    - `a`, `tau`: shape and rate of the Gamma prior on the concentration `alpha_h` of the region-probability prior

    - `nu`: concentration of the symmetric Dirichlet prior on the base projection profile `h`

    - `a_gamma`, `b_gamma`, `lb_gamma`: shape, rate and lower bound of the truncated Gamma prior on motif scales

    - `a_alpha`, `b_alpha`: shape and rate of the Gamma prior on the local concentration `alpha`

    - `a_alpha0`, `b_alpha0`: shape and rate of the Gamma prior on the global concentration `alpha_zero`
    """

    a_gamma: float = 30.
    b_gamma: float = 1.
    lb_gamma: float = 1.
    a: float = 2.
    tau: float = 0.4
    nu: float = 1.
    a_alpha: float = 1.
    b_alpha: float = 1.
    a_alpha0: float = 1.
    b_alpha0: float = 1.

    def validate(self):
        """
        Raises a ValueError if any hyperparameter is outside of its support.
        """
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "lb_gamma":
                if value < 0:
                    raise ValueError("lb_gamma must be nonnegative, got {}".format(value))
            elif not value > 0:
                raise ValueError("Prior parameter {} must be positive, got {}".format(f.name, value))
        return self


@dataclass(frozen=True)
class SamplerConfig:
    """
    MCMC control settings.

    - `number_iter`: total number of sweeps, including burn-in

    - `thinning`: keep every `thinning`-th sweep after burn-in

    - `burn_in`: number of discarded initial sweeps

    - `adaptive_prop`: adaptation rate of the Metropolis-Hastings proposal scales

    - `auto_save`, `save_path`, `save_frequency`: periodic checkpointing of the full sampler state

    - `run_omega`, `run_q_gamma`: which parameter families are updated. Only relevant with a fixed partition

    - `target_accept`, `target_accept_q`: acceptance rates targeted by the adaptation (scalar and simplex moves)
    """

    number_iter: int = 10000
    thinning: int = 5
    burn_in: int = 5000
    adaptive_prop: float = 1.
    auto_save: bool = False
    save_path: Optional[str] = None
    save_frequency: int = 1000
    run_omega: bool = True
    run_q_gamma: bool = True
    target_accept: float = 0.44
    target_accept_q: float = 0.234
    verbose: bool = True

    def validate(self):
        """
        Raises a ValueError if the settings can not produce a valid chain.
        """
        if self.burn_in < 0:
            raise ValueError("burn_in must be nonnegative, got {}".format(self.burn_in))
        if self.number_iter <= self.burn_in:
            raise ValueError("number_iter ({}) must be larger than burn_in ({})".format(
                self.number_iter, self.burn_in))
        if self.thinning < 1:
            raise ValueError("thinning must be at least 1, got {}".format(self.thinning))
        if self.adaptive_prop < 0:
            raise ValueError("adaptive_prop must be nonnegative, got {}".format(self.adaptive_prop))
        if self.save_frequency < 1:
            raise ValueError("save_frequency must be at least 1, got {}".format(self.save_frequency))
        if self.auto_save and self.save_path is None:
            raise ValueError("auto_save requires a save_path")
        if not (self.run_omega or self.run_q_gamma):
            raise ValueError("At least one of run_omega and run_q_gamma has to be enabled")
        for name in ["target_accept", "target_accept_q"]:
            value = getattr(self, name)
            if not 0 < value < 1:
                raise ValueError("{} must be in (0, 1), got {}".format(name, value))
        return self

    @property
    def num_snapshots(self) -> int:
        return len(range(self.burn_in, self.number_iter, self.thinning))
