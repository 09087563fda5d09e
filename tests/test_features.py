"""
Unit tests for feature extraction
"""

from dataclasses import replace

import numpy as np
import pytest

from stackhub.services.config import ExtractorSettings
from stackhub.services.errors import DecodeFailure
from stackhub.services.features import FeatureExtractor
from stackhub.services.models import Image

from synthetic import corner_scene, noise_image, textured_scene


class TestFeatureExtractor:
	"""Shi-Tomasi corners + patch descriptors (default method)"""

	@pytest.mark.parametrize("pixels", [
		corner_scene(),
		noise_image(),
		textured_scene(),
		textured_scene(width=97, height=61, seed=3, channels=1),
	])
	def test_positions_inside_image(self, pixels):
		"""Every feature lies in [0,width) x [0,height)"""
		fs = FeatureExtractor().extract(Image(pixels))
		h, w = pixels.shape[:2]
		assert len(fs) > 0
		assert np.all(fs.positions[:, 0] >= 0) and np.all(fs.positions[:, 0] < w)
		assert np.all(fs.positions[:, 1] >= 0) and np.all(fs.positions[:, 1] < h)
		assert fs.image_size == (w, h)

	def test_positions_inside_image_when_downscaled(self):
		"""Working-resolution positions are mapped back inside the full-resolution frame"""
		pixels = textured_scene(width=400, height=300, seed=5)
		settings = replace(ExtractorSettings(), working_max_side=150)
		fs = FeatureExtractor(settings).extract(Image(pixels))
		assert len(fs) > 0
		assert fs.positions[:, 0].max() < 400
		assert fs.positions[:, 1].max() < 300
		# spread over the full frame, not just the working copy
		assert fs.positions[:, 0].max() > 200

	def test_uniform_image_yields_empty_set(self):
		"""No corners clear the strength threshold -> empty FeatureSet, not an error"""
		fs = FeatureExtractor().extract(Image(np.full((80, 120), 128, dtype=np.uint8)))
		assert len(fs) == 0
		assert fs.positions.shape == (0, 2)

	def test_descriptor_shape_and_norm(self):
		"""Patch descriptors are fixed-length and unit-norm"""
		settings = ExtractorSettings()
		fs = FeatureExtractor(settings).extract(Image(corner_scene()))
		side = len(range(-settings.patch_radius, settings.patch_radius + 1, settings.patch_stride))
		assert fs.descriptors.shape == (len(fs), side * side)
		assert np.allclose(np.linalg.norm(fs.descriptors, axis=1), 1.0, atol=1e-5)
		assert fs.metric == "l2"

	def test_sorted_by_strength(self):
		fs = FeatureExtractor().extract(Image(textured_scene()))
		assert np.all(np.diff(fs.strengths) <= 0)

	def test_descriptors_invariant_to_exposure_gain(self):
		"""Darker copy of the same scene gives the same corners and descriptors"""
		bright = corner_scene()
		dark = (bright.astype(np.float32) * 0.5).astype(np.uint8)
		a = FeatureExtractor().extract(Image(bright))
		b = FeatureExtractor().extract(Image(dark))
		assert len(a) > 0
		common = min(len(a), len(b))
		assert common >= len(a) // 2
		pa = {tuple(p) for p in np.rint(a.positions).astype(int)}
		pb = {tuple(p) for p in np.rint(b.positions).astype(int)}
		assert len(pa & pb) >= common // 2

	def test_malformed_image_raises(self):
		with pytest.raises(DecodeFailure):
			FeatureExtractor().extract(Image(np.zeros((0, 10), dtype=np.uint8)))
		with pytest.raises(DecodeFailure):
			FeatureExtractor().extract(Image(np.zeros((10, 10, 2), dtype=np.uint8)))

	def test_unknown_method(self):
		with pytest.raises(ValueError, match="Unsupported method"):
			FeatureExtractor(replace(ExtractorSettings(), method="sift9000"))


class TestBinaryDetectors:
	"""AKAZE / ORB paths share the FeatureSet contract"""

	@pytest.mark.parametrize("method", ["akaze", "orb"])
	def test_binary_features(self, method):
		pixels = textured_scene(width=400, height=300, seed=7)
		fs = FeatureExtractor(replace(ExtractorSettings(), method=method)).extract(Image(pixels))
		assert fs.metric == "hamming"
		assert fs.descriptors.dtype == np.uint8
		assert len(fs) > 0
		assert np.all(fs.positions[:, 0] < 400) and np.all(fs.positions[:, 1] < 300)
		assert np.all(fs.positions >= 0)

	@pytest.mark.parametrize("method", ["akaze", "orb"])
	def test_binary_uniform_image(self, method):
		fs = FeatureExtractor(replace(ExtractorSettings(), method=method)).extract(Image(np.zeros((64, 64), dtype=np.uint8)))
		assert len(fs) == 0
