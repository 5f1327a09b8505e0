"""
Unit tests for the mixture model and the MCMC sampler
"""

import unittest
import tempfile
import pickle
import warnings
import numpy as np
import os
import sys
sys.path.insert(0, os.path.abspath('.'))
sys.path.insert(0, os.path.abspath('..'))

from hbmotif.model.config import PriorConfig, SamplerConfig
from hbmotif.model import mixture_model as mm
from hbmotif.model import mcmc_sampler as mc
from hbmotif.util import projection_data as dat
from hbmotif.util import data_generation as gen
from hbmotif.util import motif_ana as ana
from hbmotif.util import result_classes as res


def three_cluster_data(seed=1234, n_neurons=(60, 60)):
    q = np.array([[0.9, 0.05, 0.05],
                  [0.05, 0.9, 0.05],
                  [0.05, 0.05, 0.9]])
    omega_local = np.repeat([[1 / 3, 1 / 3, 1 / 3]], len(n_neurons), axis=0)
    return gen.generate_projection_data(list(n_neurons), q, gamma=[50., 50., 50.], omega_local=omega_local,
                                        n_total_mean=100, region_names=["OB", "ACA", "AUD"], seed=seed)


class TestMixtureModel(unittest.TestCase):
    """
    Testing likelihood and prior evaluations of the mixture model
    """

    def setUp(self):
        counts = [np.array([[5, 0, 1], [0, 0, 0]]), np.array([[1, 2, 3]])]
        self.data = dat.from_count_matrices(counts)
        self.model = mm.MixtureModel(self.data, J=2)
        self.state = self.model.initial_state(np.random.default_rng(0))

    def test_zero_count_neuron(self):
        for j in range(2):
            self.assertEqual(self.model.log_likelihood(1, j, self.state), 0.)

    def test_likelihood_matrix(self):
        ll = self.model.log_likelihood_matrix(self.state.q, self.state.gamma, include_coef=True)

        self.assertEqual(ll.shape, (3, 2))
        self.assertTrue(np.all(np.isfinite(ll)))
        self.assertTrue(np.all(ll <= 0))
        for i in range(3):
            for j in range(2):
                self.assertAlmostEqual(ll[i, j], self.model.log_likelihood(i, j, self.state))

    def test_motif_log_likelihood(self):
        members = np.array([0, 2])
        ll = self.model.log_likelihood_matrix(self.state.q, self.state.gamma)
        self.assertAlmostEqual(self.model.motif_log_likelihood(members, self.state.q[1], self.state.gamma[1]),
                               ll[members, 1].sum())
        self.assertEqual(self.model.motif_log_likelihood(np.array([], dtype=int), self.state.q[0], 2.), 0.)

    def test_dirichlet_multinomial_sums_to_one(self):
        # all compositions of n=3 counts over 2 regions
        data = dat.from_count_matrices([np.array([[3, 0], [2, 1], [1, 2], [0, 3]])])
        model = mm.MixtureModel(data, J=1)
        ll = model.log_likelihood_matrix(np.array([[0.3, 0.7]]), np.array([4.]), include_coef=True)
        self.assertAlmostEqual(np.exp(ll).sum(), 1.)

    def test_gamma_prior_truncation(self):
        lp = self.model.log_prior_gamma(np.array([0.5, 1., 2.]))
        self.assertEqual(lp[0], -np.inf)
        self.assertEqual(lp[1], -np.inf)
        self.assertTrue(np.isfinite(lp[2]))

    def test_initial_state(self):
        state = self.state
        self.assertTrue(np.allclose(state.q.sum(axis=1), 1, atol=1e-9))
        self.assertTrue(np.isclose(state.omega.sum(), 1))
        self.assertTrue(np.allclose(state.omega_local.sum(axis=1), 1))
        self.assertTrue(np.all((state.Z >= 0) & (state.Z < 2)))
        self.assertTrue(np.isfinite(self.model.log_joint(state)))

    def test_occupancy(self):
        occ = self.model.occupancy(np.array([0, 1, 1]))
        self.assertTrue(np.array_equal(occ, [[1, 1], [0, 1]]))

    def test_missing_truncation(self):
        with self.assertRaises(ValueError):
            mm.MixtureModel(self.data)
        with self.assertRaises(ValueError):
            mm.MixtureModel(self.data, J=0)
        with self.assertRaises(ValueError):
            mm.MixtureModel(self.data, J=1, fixed_partition=[0, 1, 1])

    def test_fixed_partition_truncation(self):
        model = mm.MixtureModel(self.data, fixed_partition=[0, 2, 2])
        self.assertEqual(model.J, 3)
        self.assertTrue(model.is_fixed)

    def test_log_sampling_helpers(self):
        rng = np.random.default_rng(1)
        log_g = mm.sample_log_gamma(rng, np.array([1e-5, 0.5, 3.]))
        self.assertTrue(np.all(np.isfinite(log_g)))

        log_d = mm.sample_log_dirichlet(rng, np.full((4, 5), 1e-3))
        self.assertTrue(np.allclose(np.exp(log_d).sum(axis=1), 1))

        q = mm.floor_simplex(np.array([1., 0., 0.]))
        self.assertTrue(np.all(q > 0))
        self.assertAlmostEqual(q.sum(), 1.)


class TestSampler(unittest.TestCase):
    """
    Testing the MCMC sampler: invariants, fixed-partition mode, checkpointing and cancellation
    """

    def setUp(self):
        self.data = three_cluster_data(n_neurons=(20, 20))
        self.config = SamplerConfig(number_iter=40, burn_in=20, thinning=2, verbose=False)

    def test_invariants(self):
        sampler = mc.MCMCSampler(self.data, J=4, config=self.config, seed=1)
        result = sampler.run()

        self.assertIsInstance(result, res.MotifResult)
        self.assertEqual(result.n_draws, self.config.num_snapshots)

        for s in sampler.snapshots:
            self.assertTrue(np.allclose(s.q.sum(axis=1), 1, atol=1e-9))
            self.assertTrue(np.isclose(s.omega.sum(), 1, atol=1e-9))
            self.assertTrue(np.allclose(s.omega_local.sum(axis=1), 1, atol=1e-9))
            self.assertTrue(np.isclose(s.h.sum(), 1, atol=1e-9))
            self.assertEqual(s.Z.shape[0], 40)
            self.assertTrue(np.all((s.Z >= 0) & (s.Z < 4)))
            self.assertTrue(np.all(s.gamma > PriorConfig().lb_gamma))
            self.assertTrue(np.isfinite(s.log_joint))
            self.assertFalse(s.Z.flags.writeable)

        iterations = [s.iteration for s in sampler.snapshots]
        self.assertListEqual(iterations, list(range(20, 40, 2)))

    def test_result_contents(self):
        result = mc.MCMCSampler(self.data, J=4, config=self.config, seed=2).run()

        self.assertEqual(result.allocations().shape, (10, 40))
        self.assertEqual(result.counts().shape, (40, 3))
        self.assertListEqual(result.region_names(), ["OB", "ACA", "AUD"])
        self.assertEqual(result.occupied_trace().shape, (10,))

        draw = result.posterior_draw(0)
        self.assertEqual(draw["q"].shape, (4, 3))
        self.assertEqual(draw["omega_local"].shape, (2, 4))

        acc = result.acceptance_rates()
        self.assertEqual(acc.shape, (4, 2))
        self.assertTrue(np.all((acc.values >= 0) & (acc.values <= 1)))

        summary = result.summary_prepare()
        self.assertEqual(summary.shape[0], 4)
        self.assertIn("Weight", summary.columns)

        self.assertEqual(result.sampling_stats["num_snapshots"], 10)
        self.assertFalse(result.sampling_stats["cancelled"])
        self.assertEqual(result.model_specs["J"], 4)

    def test_fixed_partition(self):
        partition = self.data.uns["Z_true"]
        sampler = mc.MCMCSampler(self.data, config=self.config, fixed_partition=partition, seed=3)
        result = sampler.run()

        self.assertEqual(sampler.model.J, 3)
        self.assertTrue(np.all(result.allocations() == partition[np.newaxis, :]))

    def test_fixed_partition_weights_only(self):
        partition = self.data.uns["Z_true"]
        config = SamplerConfig(number_iter=40, burn_in=20, thinning=2, verbose=False, run_q_gamma=False)
        sampler = mc.MCMCSampler(self.data, config=config, fixed_partition=partition, seed=3)
        q_start = sampler.state.q.copy()
        sampler.run()

        self.assertTrue(np.array_equal(sampler.state.q, q_start))
        rates = sampler.acceptance_rates()
        self.assertTrue(np.all(np.isnan(rates["q"])))
        self.assertFalse(np.isnan(rates["alpha"]))

    def test_flags_ignored_in_free_mode(self):
        config = SamplerConfig(number_iter=40, burn_in=20, verbose=False, run_omega=False)
        sampler = mc.MCMCSampler(self.data, J=3, config=config, seed=4)
        self.assertTrue(sampler.run_omega)

    def test_seed_reproducibility(self):
        r1 = mc.MCMCSampler(self.data, J=4, config=self.config, seed=5).run()
        r2 = mc.MCMCSampler(self.data, J=4, config=self.config, seed=5).run()
        self.assertTrue(np.array_equal(r1.allocations(), r2.allocations()))
        self.assertTrue(np.array_equal(np.asarray(r1.posterior["q"]), np.asarray(r2.posterior["q"])))

    def test_checkpoint_resume(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sampler.pkl")
            config = SamplerConfig(number_iter=40, burn_in=10, thinning=1, verbose=False,
                                   auto_save=True, save_path=path, save_frequency=10)

            sampler = mc.MCMCSampler(self.data, J=4, config=config, seed=6)
            interrupted = sampler.run(should_stop=lambda: sampler.iteration >= 20)
            self.assertTrue(interrupted.sampling_stats["cancelled"])
            self.assertEqual(interrupted.n_draws, 10)

            resumed = mc.MCMCSampler.resume(path)
            self.assertEqual(resumed.n_draws, 30)
            self.assertFalse(resumed.sampling_stats["cancelled"])

            full = mc.MCMCSampler(self.data, J=4, config=config, seed=6).run()
            self.assertTrue(np.array_equal(full.allocations(), resumed.allocations()))
            self.assertTrue(np.allclose(np.asarray(full.posterior["q"]), np.asarray(resumed.posterior["q"])))

    def test_load_wrong_checkpoint(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "other.pkl")
            with open(path, "wb") as f:
                pickle.dump({"a": 1}, f)
            with self.assertRaises(ValueError):
                mc.MCMCSampler.load_checkpoint(path)

    def test_cancellation(self):
        sampler = mc.MCMCSampler(self.data, J=4, config=self.config, seed=7)
        result = sampler.run(should_stop=lambda: sampler.iteration >= 25)

        self.assertTrue(result.sampling_stats["cancelled"])
        self.assertEqual(result.sampling_stats["iterations_completed"], 25)
        # snapshots at sweeps 20, 22, 24
        self.assertEqual(result.n_draws, 3)

    def test_no_snapshots_warning(self):
        sampler = mc.MCMCSampler(self.data, J=4, config=self.config, seed=8)
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            sampler.run(should_stop=lambda: sampler.iteration >= 5)
        self.assertTrue(any("No snapshots" in str(x.message) for x in w))

    def test_z_init(self):
        Z_init = np.zeros(40, dtype=int)
        sampler = mc.MCMCSampler(self.data, J=2, config=self.config, Z_init=Z_init, seed=9)
        self.assertTrue(np.array_equal(sampler.state.Z, Z_init))

        with self.assertRaises(ValueError):
            mc.MCMCSampler(self.data, J=2, config=self.config, Z_init=np.full(40, 3), seed=9)

    def test_simplex_proposal(self):
        sampler = mc.MCMCSampler(self.data, J=4, config=self.config, seed=1)
        centre = np.array([0.5, 0.3, 0.2])

        # raw draw away from the boundary
        sampler.rng = np.random.default_rng(5)
        new, log_new = sampler._propose_simplex(centre, 50.)
        expected = mm.sample_log_dirichlet(np.random.default_rng(5), 50. * centre)
        self.assertTrue(np.array_equal(log_new, expected))
        self.assertTrue(np.array_equal(new, np.exp(expected)))

        # draws below the floor are floored, density evaluated at the floored value
        new, log_new = sampler._propose_simplex(centre, 1e-3)
        self.assertTrue(np.all(new >= 0.5 * mm.Q_FLOOR))
        self.assertAlmostEqual(new.sum(), 1.)
        self.assertTrue(np.allclose(log_new, np.log(new)))

    def test_adaptive_proposal(self):
        prop = mc.AdaptiveProposal(2, 1., target=0.44, rate=1.)
        prop.adapt(1., 0, index=0)
        self.assertGreater(prop.scale[0], 1.)
        self.assertEqual(prop.scale[1], 1.)

        conc = mc.AdaptiveProposal(1, 10., target=0.234, rate=1., sign=-1)
        conc.adapt(0., 0)
        self.assertGreater(conc.scale[0], 10.)


class TestMotifAnalysis(unittest.TestCase):
    """
    Testing the sampler initializer
    """

    def setUp(self):
        self.data = three_cluster_data(n_neurons=(20, 20))
        self.config = SamplerConfig(number_iter=20, burn_in=10, verbose=False)

    def test_kmeans_initialization(self):
        sampler = ana.MotifAnalysis(self.data, J=5, initialization="kmeans", config=self.config, seed=1)

        self.assertIsInstance(sampler, mc.MCMCSampler)
        self.assertEqual(sampler.model.J, 5)
        self.assertTrue(np.all((sampler.state.Z >= 0) & (sampler.state.Z < 5)))

    def test_kmeans_recovers_clusters(self):
        sampler = ana.MotifAnalysis(self.data, J=3, initialization="kmeans", config=self.config, seed=2)
        pairs = set(zip(self.data.uns["Z_true"], sampler.state.Z))

        self.assertEqual(len(pairs), 3)
        self.assertEqual(len(np.unique(sampler.state.Z)), 3)

    def test_random_and_given_initialization(self):
        sampler = ana.MotifAnalysis(self.data, J=3, initialization="random", config=self.config, seed=1)
        self.assertIsInstance(sampler, mc.MCMCSampler)

        Z = self.data.uns["Z_true"]
        sampler = ana.MotifAnalysis(self.data, J=3, initialization=Z, config=self.config, seed=1)
        self.assertTrue(np.array_equal(sampler.state.Z, Z))

        with self.assertRaises(ValueError):
            ana.MotifAnalysis(self.data, J=3, initialization="spectral", config=self.config)


if __name__ == '__main__':
    unittest.main()
