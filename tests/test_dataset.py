import unittest

import numpy as np

from dwi_io.dataset import DWIDataset
from dwi_io.errors import CountMismatchError, StructuralInconsistencyError
from dwi_io.gradients import GradientTable


class TestDWIDataset(unittest.TestCase):

    def setUp(self):
        self.gradients = GradientTable([[0, 0, 0], [0, 0, 1]], [0, 800])

    def test_derived_sizes(self):
        dataset = DWIDataset(np.zeros((6, 7, 10), dtype=np.int16), [1, 1, 2], [0, 0, 0], np.eye(3), 5,
                             self.gradients)
        self.assertEqual((dataset.cols, dataset.rows, dataset.total_slices), (6, 7, 10))
        self.assertEqual(dataset.n_volumes, 2)
        self.assertEqual(dataset.space, 'left-posterior-superior')

    def test_not_divisible_raises(self):
        with self.assertRaises(StructuralInconsistencyError):
            DWIDataset(np.zeros((2, 2, 9), dtype=np.int16), [1, 1, 1], [0, 0, 0], np.eye(3), 5, self.gradients)

    def test_gradient_count_mismatch(self):
        with self.assertRaises(CountMismatchError):
            DWIDataset(np.zeros((2, 2, 15), dtype=np.int16), [1, 1, 1], [0, 0, 0], np.eye(3), 5, self.gradients)

    def test_requires_3d_buffer(self):
        with self.assertRaises(ValueError):
            DWIDataset(np.zeros((2, 10), dtype=np.int16), [1, 1, 1], [0, 0, 0], np.eye(3), 5, self.gradients)

    def test_affines(self):
        direction = np.array([[0, 0, 1], [1, 0, 0], [0, 1, 0]], dtype=float)
        dataset = DWIDataset(np.zeros((2, 2, 4), dtype=np.int16), [1.5, 2.0, 3.0], [5, 6, 7], direction, 2,
                             self.gradients)
        lps = dataset.lps_affine()
        np.testing.assert_array_almost_equal(lps[:3, :3], direction @ np.diag([1.5, 2.0, 3.0]))
        np.testing.assert_array_almost_equal(lps[:3, 3], [5, 6, 7])
        ras = dataset.ras_affine()
        np.testing.assert_array_almost_equal(ras[0], -lps[0])
        np.testing.assert_array_almost_equal(ras[1], -lps[1])
        np.testing.assert_array_almost_equal(ras[2:], lps[2:])
