"""
Initialization of projection-motif samplers.
"""
import numpy as np

from anndata import AnnData
from sklearn.cluster import KMeans
from typing import Optional, Union, Collection

from hbmotif.model.config import PriorConfig, SamplerConfig
from hbmotif.model import mcmc_sampler as mc
from hbmotif.util import projection_data as dat


class MotifAnalysis:
    """
    Initializer class for projection-motif samplers.

    Usage: ``sampler = MotifAnalysis(data, J=20, initialization="kmeans", seed=1)``, then ``result = sampler.run()``

    data
        projection data set (see ``hbmotif.util.projection_data``)
    J
        truncation level
    initialization
        "kmeans": initial allocations from k-means on cosine-normalized projection strengths.
        "random": random neurons as motif centres.
        Alternatively, an initial allocation with one motif index per neuron.
    """

    def __new__(
            cls,
            data: AnnData,
            J: int,
            initialization: Union[str, Collection[int]] = "kmeans",
            prior: PriorConfig = PriorConfig(),
            config: SamplerConfig = SamplerConfig(),
            seed: Optional[int] = None,
    ) -> mc.MCMCSampler:
        """
        Chooses starting allocations and returns a sampler.

        Parameters
        ----------
        data
            projection data set
        J
            truncation level
        initialization
            "kmeans", "random" or an initial allocation
        prior
            Prior hyperparameters
        config
            Sampler settings
        seed
            Random seed for initialization and sampling

        Returns
        -------
        A sampler

        sampler
            A hbmotif.model.mcmc_sampler.MCMCSampler object
        """

        if isinstance(initialization, str):
            if initialization == "kmeans":
                # cosine-normalized projection strengths
                strengths = dat.normalize_projections(dat.counts(data))
                norms = np.linalg.norm(strengths, axis=1, keepdims=True)
                features = np.divide(strengths, norms, out=np.zeros_like(strengths), where=norms > 0)
                n_clusters = min(J, data.n_obs)
                Z_init = KMeans(n_clusters=n_clusters, random_state=seed, n_init=10).fit_predict(features)
                Z_init = dat.contiguous_labels(Z_init)
                if config.verbose:
                    print("k-means initialization with {} motifs".format(len(np.unique(Z_init))))
            elif initialization == "random":
                Z_init = None
            else:
                raise ValueError("Unknown initialization {}, use 'kmeans', 'random' or an allocation".format(
                    initialization))
        else:
            Z_init = dat.validate_partition(initialization, data.n_obs, J)

        return mc.MCMCSampler(data, J=J, prior=prior, config=config, Z_init=Z_init, seed=seed)
