import os
import json
import unittest
import tempfile

import numpy as np
import nibabel as nib
import pytest

from dwi_io.dataset import DWIDataset
from dwi_io.errors import CountMismatchError, StructuralInconsistencyError, UnrecognizedOutputFormatError
from dwi_io.fsl_utils import (has_valid_nifti_extension, load_fsl_bvals, load_fsl_bvecs, read_fsl_dataset,
                              reshape_to_4d, split_nifti_extension, write_fsl_formatted_file_set)
from dwi_io.gradients import GradientTable


def _make_dataset(n_volumes=3, slices_per_volume=2):
    data = np.arange(4 * 5 * slices_per_volume * n_volumes, dtype=np.int16).reshape(
        (4, 5, slices_per_volume * n_volumes), order='F')
    vectors = np.zeros((n_volumes, 3))
    vectors[1:, 0] = 1.0
    bvalues = [0] + [1000] * (n_volumes - 1)
    gradients = GradientTable(vectors, bvalues)
    return DWIDataset(data, [2.0, 2.0, 3.0], [-100.0, -110.0, 20.0], np.eye(3), slices_per_volume, gradients,
                      metadata={'Vendor': 'standard'})


class TestExtensions(unittest.TestCase):

    def test_split(self):
        self.assertEqual(split_nifti_extension("/a/dwi.nii.gz"), ("/a/dwi", ".nii.gz"))
        self.assertEqual(split_nifti_extension("/a/dwi.nii"), ("/a/dwi", ".nii"))
        self.assertEqual(split_nifti_extension("/a/dwi.nrrd"), ("/a/dwi.nrrd", None))

    def test_valid(self):
        self.assertTrue(has_valid_nifti_extension("dwi.nii.gz"))
        self.assertFalse(has_valid_nifti_extension("dwi.img"))


class TestWriteFsl:

    def test_writes_image_and_sidecars(self, tmp_path):
        dataset = _make_dataset()
        output = str(tmp_path / "dwi.nii.gz")
        bval_path, bvec_path = write_fsl_formatted_file_set(dataset, output)
        assert bval_path == str(tmp_path / "dwi.bval")
        assert bvec_path == str(tmp_path / "dwi.bvec")

        img = nib.load(output)
        assert img.shape == (4, 5, 2, 3)
        np.testing.assert_array_equal(np.asanyarray(img.dataobj),
                                      dataset.data.reshape((4, 5, 2, 3), order='F'))
        expected_affine = np.array([[-2, 0, 0, 100],
                                    [0, -2, 0, 110],
                                    [0, 0, 3, 20],
                                    [0, 0, 0, 1]], dtype=float)
        np.testing.assert_array_almost_equal(img.affine, expected_affine)
        assert int(img.header['qform_code']) == 1
        assert int(img.header['sform_code']) == 0

        bvals = np.loadtxt(bval_path, ndmin=2)
        assert bvals.shape == (1, 3)
        np.testing.assert_array_equal(bvals[0], [0, 1000, 1000])
        bvecs = np.loadtxt(bvec_path)
        assert bvecs.shape == (3, 3)
        np.testing.assert_array_almost_equal(bvecs[1], [1, 0, 0])

    def test_explicit_sidecar_names_and_json(self, tmp_path):
        dataset = _make_dataset()
        bval = str(tmp_path / "custom.bval")
        bvec = str(tmp_path / "custom.bvec")
        sidecar = str(tmp_path / "dwi.json")
        write_fsl_formatted_file_set(dataset, str(tmp_path / "dwi.nii"), bval, bvec, json_sidecar_file=sidecar)
        assert os.path.exists(bval) and os.path.exists(bvec)
        with open(sidecar) as f:
            metadata = json.load(f)
        assert metadata['Dimensions'] == [4, 5, 2, 3]
        assert metadata['MaxBValue'] == 1000.0
        assert metadata['Vendor'] == 'standard'

    def test_bad_extension(self, tmp_path):
        with pytest.raises(UnrecognizedOutputFormatError):
            write_fsl_formatted_file_set(_make_dataset(), str(tmp_path / "dwi.img"))


class TestReshape(unittest.TestCase):

    def test_reshape_shape(self):
        self.assertEqual(reshape_to_4d(_make_dataset(n_volumes=4, slices_per_volume=3)).shape, (4, 5, 3, 4))

    def test_remainder_raises_by_default(self):
        dataset = _make_dataset()
        # Seven slices cannot form three volumes.
        dataset.data = np.zeros((4, 5, 7), dtype=np.int16)
        with self.assertRaises(StructuralInconsistencyError):
            reshape_to_4d(dataset)


class TestReadFsl(unittest.TestCase):

    def test_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nii.gz")
            original = _make_dataset()
            write_fsl_formatted_file_set(original, output)

            dataset = read_fsl_dataset(output)
            np.testing.assert_array_equal(dataset.data, original.data)
            self.assertEqual(dataset.slices_per_volume, 2)
            self.assertEqual(dataset.n_volumes, 3)
            np.testing.assert_array_almost_equal(dataset.spacing, original.spacing)
            np.testing.assert_array_almost_equal(dataset.origin, original.origin)
            np.testing.assert_array_almost_equal(dataset.direction, np.eye(3))
            np.testing.assert_array_equal(dataset.gradients.bvalues, [0, 1000, 1000])

    def test_low_bvalue_shell_keeps_direction(self):
        data = np.zeros((4, 5, 6), dtype=np.int16)
        gradients = GradientTable([[0, 0, 0], [0, 1, 0], [1, 0, 0]], [0, 100, 3000])
        original = DWIDataset(data, [2.0, 2.0, 3.0], [0.0, 0.0, 0.0], np.eye(3), 2, gradients)
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nii.gz")
            write_fsl_formatted_file_set(original, output)
            # The stored vector of the b=100 volume is scaled to sqrt(100 / 3000).
            self.assertLess(np.linalg.norm(np.loadtxt(os.path.join(tmpdir, "dwi.bvec"))[1]), 0.2)

            dataset = read_fsl_dataset(output)
        np.testing.assert_array_equal(dataset.gradients.bvalues, [0, 100, 3000])
        np.testing.assert_array_almost_equal(dataset.gradients.unit_vectors, [[0, 0, 0], [0, 1, 0], [1, 0, 0]])

    def test_count_mismatch(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nii")
            write_fsl_formatted_file_set(_make_dataset(), output)
            np.savetxt(os.path.join(tmpdir, "dwi.bval"), [[0, 1000]], fmt='%g')
            with self.assertRaises(CountMismatchError):
                read_fsl_dataset(output)

    def test_load_bvecs_transposes_3xn(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "dwi.bvec")
            bvecs = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=float)
            np.savetxt(path, bvecs.T)
            np.testing.assert_array_equal(load_fsl_bvecs(path), bvecs)

    def test_load_bvals_column(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "dwi.bval")
            np.savetxt(path, np.array([0, 1000, 2000]))
            np.testing.assert_array_equal(load_fsl_bvals(path), [0, 1000, 2000])
