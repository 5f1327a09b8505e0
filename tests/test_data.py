"""
Unit tests for data handling, configuration and data generation
"""

import unittest
import numpy as np
import pandas as pd
import os
import sys
sys.path.insert(0, os.path.abspath('.'))
sys.path.insert(0, os.path.abspath('..'))

from hbmotif.model.config import PriorConfig, SamplerConfig
from hbmotif.util import projection_data as dat
from hbmotif.util import data_generation as gen


class TestDataImport(unittest.TestCase):
    """
    Testing whether the import functions from projection_data work as intended
    """

    def setUp(self):
        self.m1 = np.array([[10, 0, 2], [0, 5, 5]])
        self.m2 = np.array([[1, 1, 1], [0, 0, 0], [7, 0, 0]])

    def test_from_count_matrices(self):
        data = dat.from_count_matrices({0: self.m1, 1: self.m2}, region_names=["OB", "ACA", "AUD"])

        self.assertEqual(data.shape, (5, 3))
        self.assertListEqual(dat.region_names(data), ["OB", "ACA", "AUD"])
        self.assertTrue(np.array_equal(dat.animal_index(data), [0, 0, 1, 1, 1]))
        self.assertTrue(np.array_equal(dat.animal_sizes(data), [2, 3]))
        self.assertTrue(np.array_equal(dat.counts(data)[2:], self.m2))

    def test_list_input_and_default_names(self):
        data = dat.from_count_matrices([self.m1, self.m2])
        self.assertListEqual(dat.region_names(data), ["region_0", "region_1", "region_2"])
        splits = dat.split_by_animal(data)
        self.assertEqual(len(splits), 2)
        self.assertTrue(np.array_equal(splits[0], self.m1))

    def test_from_pandas(self):
        df = pd.DataFrame({"mouse": ["b", "a", "b"], "OB": [1, 2, 3], "ACA": [0, 1, 0]})
        data = dat.from_pandas(df, "mouse")

        # animals sorted by key
        self.assertListEqual(data.uns["animal_keys"], ["a", "b"])
        self.assertTrue(np.array_equal(dat.animal_index(data), [0, 1, 1]))
        self.assertTrue(np.array_equal(dat.counts(data)[:, 0], [2, 1, 3]))

        with self.assertRaises(ValueError):
            dat.from_pandas(df, "rat")

    def test_invalid_counts(self):
        with self.assertRaises(ValueError):
            dat.from_count_matrices([np.array([[1, -1]])])
        with self.assertRaises(ValueError):
            dat.from_count_matrices([np.array([[1.5, 1]])])
        with self.assertRaises(ValueError):
            dat.from_count_matrices([np.array([[1, 1]]), np.array([[1, 1, 1]])])
        with self.assertRaises(ValueError):
            dat.from_count_matrices([self.m1], region_names=["OB"])
        with self.assertRaises(ValueError):
            dat.from_count_matrices([])

    def test_normalize_projections(self):
        strengths = dat.normalize_projections(self.m2)
        self.assertTrue(np.allclose(strengths[0], 1 / 3))
        self.assertTrue(np.array_equal(strengths[1], [0, 0, 0]))
        self.assertTrue(np.allclose(strengths[2], [1, 0, 0]))

    def test_with_animal_labels(self):
        data = dat.from_count_matrices([self.m1, self.m2])
        data_new = dat.with_animal_labels(data, [1, 1, 0, 0, 0])

        self.assertTrue(np.array_equal(dat.animal_index(data_new), [1, 1, 0, 0, 0]))
        # original unchanged
        self.assertTrue(np.array_equal(dat.animal_index(data), [0, 0, 1, 1, 1]))
        with self.assertRaises(ValueError):
            dat.with_animal_labels(data, [0, 1])


class TestPartitions(unittest.TestCase):

    def test_validate_partition(self):
        p = dat.validate_partition([0, 2, 2, 1], 4, J=3)
        self.assertTrue(np.array_equal(p, [0, 2, 2, 1]))

        with self.assertRaises(ValueError):
            dat.validate_partition([0, 1], 4)
        with self.assertRaises(ValueError):
            dat.validate_partition([0, 1, -1, 0], 4)
        with self.assertRaises(ValueError):
            dat.validate_partition([0, 1.5, 1, 0], 4)
        with self.assertRaises(ValueError):
            dat.validate_partition([0, 1, 2, 3], 4, J=3)
        with self.assertRaises(ValueError):
            dat.validate_partition([0, 0, 5, 0], 4, J=3)

    def test_contiguous_labels(self):
        self.assertTrue(np.array_equal(dat.contiguous_labels([4, 4, 1, 7, 1]), [0, 0, 1, 2, 1]))


class TestConfig(unittest.TestCase):
    """
    Testing the validation of prior and sampler settings
    """

    def test_defaults_valid(self):
        PriorConfig().validate()
        SamplerConfig().validate()
        self.assertEqual(SamplerConfig().num_snapshots, 1000)

    def test_invalid_prior(self):
        with self.assertRaises(ValueError):
            PriorConfig(a_gamma=0).validate()
        with self.assertRaises(ValueError):
            PriorConfig(tau=-1).validate()
        with self.assertRaises(ValueError):
            PriorConfig(lb_gamma=-0.5).validate()
        PriorConfig(lb_gamma=0).validate()

    def test_invalid_sampler(self):
        with self.assertRaises(ValueError):
            SamplerConfig(number_iter=100, burn_in=100).validate()
        with self.assertRaises(ValueError):
            SamplerConfig(thinning=0).validate()
        with self.assertRaises(ValueError):
            SamplerConfig(burn_in=-1).validate()
        with self.assertRaises(ValueError):
            SamplerConfig(auto_save=True, save_path=None).validate()
        with self.assertRaises(ValueError):
            SamplerConfig(run_omega=False, run_q_gamma=False).validate()
        with self.assertRaises(ValueError):
            SamplerConfig(target_accept=1.5).validate()

    def test_num_snapshots(self):
        config = SamplerConfig(number_iter=200, burn_in=100, thinning=3)
        self.assertEqual(config.num_snapshots, 34)


class TestDataGeneration(unittest.TestCase):
    """
    Testing whether the data generation functions from data_generation work as intended
    """

    def test_generate_projection_data(self):
        q = np.array([[0.9, 0.05, 0.05], [0.05, 0.05, 0.9]])
        data = gen.generate_projection_data([20, 30], q, gamma=[50., 50.],
                                            omega_local=[[1., 0.], [0.5, 0.5]], n_total_mean=20, seed=1)

        self.assertEqual(data.shape, (50, 3))
        self.assertTrue(np.array_equal(dat.animal_sizes(data), [20, 30]))
        self.assertTrue(np.all(dat.counts(data).sum(axis=1) >= 1))

        # animal 0 only has neurons of motif 0
        Z = data.uns["Z_true"]
        self.assertTrue(np.all(Z[:20] == 0))
        self.assertTrue(np.array_equal(data.uns["q_true"], q))

    def test_generate_wrong_shapes(self):
        q = np.array([[0.5, 0.5]])
        with self.assertRaises(ValueError):
            gen.generate_projection_data([5], q, gamma=[1., 2.], omega_local=[[1.]])
        with self.assertRaises(ValueError):
            gen.generate_projection_data([5, 5], q, gamma=[1.], omega_local=[[1.]])

    def test_sample_model_parameters(self):
        rng = np.random.default_rng(42)
        params = gen.sample_model_parameters(J=6, R=4, M=3, prior=PriorConfig(), rng=rng)

        self.assertEqual(params["q"].shape, (6, 4))
        self.assertTrue(np.allclose(params["q"].sum(axis=1), 1, atol=1e-9))
        self.assertTrue(np.isclose(params["omega"].sum(), 1, atol=1e-9))
        self.assertTrue(np.allclose(params["omega_local"].sum(axis=1), 1, atol=1e-9))
        self.assertTrue(np.all(params["gamma"] > PriorConfig().lb_gamma))


if __name__ == '__main__':
    unittest.main()
