import os
import unittest
import tempfile

import numpy as np
import nrrd
import pytest

from dwi_io.dataset import DWIDataset
from dwi_io.errors import IOFailureError
from dwi_io.gradients import GradientTable
from dwi_io.nrrd_utils import (build_nrrd_header, detached_data_filename, format_double, make_file_comment,
                               read_nrrd_dataset, write_dwi_nrrd)


def _make_dataset(measurement_frame=None, use_identity_measurement_frame=False):
    # cols=2, rows=3, two slices per volume, two volumes.
    data = np.arange(24, dtype=np.int16).reshape((2, 3, 4), order='F')
    gradients = GradientTable([[0, 0, 0], [1, 0, 0]], [0, 1000], measurement_frame,
                              use_identity_measurement_frame)
    return DWIDataset(data, [1.0, 2.0, 3.0], [10.0, -20.0, 30.0], np.eye(3), 2, gradients)


EXPECTED_HEADER = (
    "NRRD0005\n"
    "#\n"
    "#\n"
    "# This file was created by dwiconvert version 0.1.0\n"
    "# https://github.com/dwiconvert/dwiconvert\n"
    "# part of the dwiconvert package.\n"
    "# Command line options:\n"
    "# --smallGradientThreshold 2.0000000000000001e-01\n"
    "type: short\n"
    "dimension: 4\n"
    "space: left-posterior-superior\n"
    "sizes: 2 3 2 2\n"
    "thicknesses:  NaN  NaN 3.0000000000000000e+00 NaN\n"
    "space directions: "
    "(1.0000000000000000e+00,0.0000000000000000e+00,0.0000000000000000e+00) "
    "(0.0000000000000000e+00,2.0000000000000000e+00,0.0000000000000000e+00) "
    "(0.0000000000000000e+00,0.0000000000000000e+00,3.0000000000000000e+00) none\n"
    "centerings: cell cell cell ???\n"
    "kinds: space space space list\n"
    "endian: little\n"
    "encoding: raw\n"
    "space units: \"mm\" \"mm\" \"mm\"\n"
    "space origin: (1.0000000000000000e+01,-2.0000000000000000e+01,3.0000000000000000e+01) \n"
    "measurement frame: "
    "(1.0000000000000000e+00,0.0000000000000000e+00,0.0000000000000000e+00) "
    "(0.0000000000000000e+00,1.0000000000000000e+00,0.0000000000000000e+00) "
    "(0.0000000000000000e+00,0.0000000000000000e+00,1.0000000000000000e+00)\n"
    "modality:=DWMRI\n"
    "DWMRI_b-value:=1.0000000000000000e+03\n"
    "DWMRI_gradient_0000:=0.0000000000000000e+00   0.0000000000000000e+00   0.0000000000000000e+00\n"
    "DWMRI_gradient_0001:=1.0000000000000000e+00   0.0000000000000000e+00   0.0000000000000000e+00\n"
    "\n"
)


class TestFormatting(unittest.TestCase):

    def test_format_double(self):
        self.assertEqual(format_double(1000), "1.0000000000000000e+03")
        self.assertEqual(format_double(0.2), "2.0000000000000001e-01")
        self.assertEqual(format_double(float('nan')), "NaN")

    def test_file_comment_flags(self):
        comment = make_file_comment("1.2.3", use_bmatrix_gradient_directions=True,
                                    use_identity_measurement_frame=True, small_gradient_threshold=0.5)
        lines = comment.splitlines()
        self.assertEqual(lines[:2], ["#", "#"])
        self.assertEqual(lines[2], "# This file was created by dwiconvert version 1.2.3")
        self.assertEqual(lines[4], "# part of the dwiconvert package.")
        self.assertEqual(lines[6], "# --smallGradientThreshold 5.0000000000000000e-01")
        self.assertEqual(lines[7:], ["# --useIdentityMeasurementFrame", "# --useBMatrixGradientDirections"])

    def test_detached_data_filename(self):
        self.assertEqual(detached_data_filename("/tmp/out.nhdr"), "/tmp/out.raw")
        self.assertIsNone(detached_data_filename("/tmp/out.nrrd"))


class TestNrrdHeader(unittest.TestCase):

    def test_header_is_byte_exact(self):
        header = build_nrrd_header(_make_dataset(), make_file_comment("0.1.0"))
        self.assertEqual(header, EXPECTED_HEADER)

    def test_sizes_order_is_cols_rows_slices_volumes(self):
        data = np.zeros((4, 5, 6), dtype=np.int16)
        gradients = GradientTable(np.zeros((3, 3)), [0, 0, 0])
        dataset = DWIDataset(data, [1, 1, 1], [0, 0, 0], np.eye(3), 2, gradients)
        header = build_nrrd_header(dataset, "")
        self.assertIn("sizes: 4 5 2 3\n", header)

    def test_rotated_frame_is_written(self):
        frame = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
        header = build_nrrd_header(_make_dataset(frame), "")
        # Columns of the frame, one parenthesised vector each.
        self.assertIn("measurement frame: (0.0000000000000000e+00,1.0000000000000000e+00,0.0000000000000000e+00) "
                      "(-1.0000000000000000e+00,0.0000000000000000e+00,0.0000000000000000e+00) ", header)
        # inverse(frame) @ [1, 0, 0] = [0, -1, 0]
        self.assertIn("DWMRI_gradient_0001:=0.0000000000000000e+00   -1.0000000000000000e+00   "
                      "0.0000000000000000e+00\n", header)

    def test_identity_frame_option_writes_identity(self):
        frame = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
        header = build_nrrd_header(_make_dataset(frame, use_identity_measurement_frame=True), "")
        self.assertIn("DWMRI_gradient_0001:=1.0000000000000000e+00   0.0000000000000000e+00   "
                      "0.0000000000000000e+00\n", header)


class TestWriteDwiNrrd:

    def test_single_file(self, tmp_path):
        output = str(tmp_path / "dwi.nrrd")
        assert write_dwi_nrrd(_make_dataset(), output, make_file_comment("0.1.0")) is None
        with open(output, 'rb') as f:
            content = f.read()
        header_bytes = EXPECTED_HEADER.encode('ascii')
        assert content[:len(header_bytes)] == header_bytes
        assert content[len(header_bytes):] == np.arange(24, dtype='<i2').tobytes()

    def test_detached_header(self, tmp_path):
        output = str(tmp_path / "dwi.nhdr")
        raw_path = write_dwi_nrrd(_make_dataset(), output, make_file_comment("0.1.0"))
        assert raw_path == str(tmp_path / "dwi.raw")
        with open(output, 'r') as f:
            lines = f.read().splitlines()
        assert lines[8] == "content: exists(dwi.raw,0)"
        assert "data file: dwi.raw" in lines
        assert lines.index("data file: dwi.raw") == lines.index(
            "space origin: (1.0000000000000000e+01,-2.0000000000000000e+01,3.0000000000000000e+01) ") + 1
        with open(raw_path, 'rb') as f:
            assert f.read() == np.arange(24, dtype='<i2').tobytes()

    def test_readable_by_pynrrd(self, tmp_path):
        output = str(tmp_path / "dwi.nhdr")
        write_dwi_nrrd(_make_dataset(), output, make_file_comment("0.1.0"))
        data, header = nrrd.read(output)
        assert data.shape == (2, 3, 2, 2)
        np.testing.assert_array_equal(data.reshape((2, 3, 4), order='F'),
                                      np.arange(24).reshape((2, 3, 4), order='F'))
        assert header['modality'] == 'DWMRI'
        assert 'DWMRI_gradient_0001' in header

    def test_write_failure_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(IOFailureError):
            write_dwi_nrrd(_make_dataset(), str(blocker / "dwi.nrrd"), "")


class TestReadNrrdDataset(unittest.TestCase):

    def test_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nrrd")
            original = _make_dataset()
            write_dwi_nrrd(original, output, make_file_comment("0.1.0"))

            dataset = read_nrrd_dataset(output)
            np.testing.assert_array_equal(dataset.data, original.data)
            self.assertEqual(dataset.slices_per_volume, 2)
            np.testing.assert_array_almost_equal(dataset.spacing, [1, 2, 3])
            np.testing.assert_array_almost_equal(dataset.origin, [10, -20, 30])
            np.testing.assert_array_almost_equal(dataset.gradients.bvalues, [0, 1000])
            np.testing.assert_array_almost_equal(dataset.gradients.unit_vectors, [[0, 0, 0], [1, 0, 0]])

    def test_round_trip_with_rotated_frame(self):
        frame = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nrrd")
            original = _make_dataset(frame)
            write_dwi_nrrd(original, output, "")
            dataset = read_nrrd_dataset(output)
            np.testing.assert_array_almost_equal(dataset.gradients.measurement_frame, frame)
            np.testing.assert_array_almost_equal(dataset.gradients.output_vectors, original.gradients.output_vectors)

    def test_low_bvalue_shell_keeps_direction(self):
        data = np.zeros((2, 3, 6), dtype=np.int16)
        gradients = GradientTable([[0, 0, 0], [0, 1, 0], [1, 0, 0]], [0, 100, 3000])
        original = DWIDataset(data, [1.0, 1.0, 1.0], [0.0, 0.0, 0.0], np.eye(3), 2, gradients)
        with tempfile.TemporaryDirectory() as tmpdir:
            output = os.path.join(tmpdir, "dwi.nrrd")
            write_dwi_nrrd(original, output, "")
            dataset = read_nrrd_dataset(output, 0.2)
        np.testing.assert_array_almost_equal(dataset.gradients.bvalues, [0, 100, 3000])
        np.testing.assert_array_almost_equal(dataset.gradients.unit_vectors, [[0, 0, 0], [0, 1, 0], [1, 0, 0]])

    def test_missing_file(self):
        with self.assertRaises(IOFailureError):
            read_nrrd_dataset("/nonexistent/dwi.nrrd")
