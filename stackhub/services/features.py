from __future__ import annotations
"""
Feature extraction for registration.

- FeatureExtractor(settings) with .extract(image) -> FeatureSet
- 'corners': Shi-Tomasi corners + normalised patch descriptors (L2); exposure-robust, default
- 'akaze' / 'orb': OpenCV binary descriptors (Hamming)

Detection always runs on luminance, on a copy downscaled to settings.working_max_side;
positions are returned in full-resolution coordinates.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Tuple

import cv2
import numpy as np

from stackhub.services.config import ExtractorSettings
from stackhub.services.errors import ConstructionFailure
from stackhub.services.image_utils import downscale, to_gray01
from stackhub.services.models import FeatureSet, Image

log = logging.getLogger(__name__)

METHODS = ("corners", "akaze", "orb")


@dataclass
class FeatureExtractor:
	settings: ExtractorSettings = field(default_factory=ExtractorSettings)

	def __post_init__(self):
		m = self.settings.method.lower()
		if m not in METHODS:
			raise ValueError(f"Unsupported method: {self.settings.method}")
		self.method = m
		try:
			if m == "akaze":
				self._det = cv2.AKAZE_create()
			elif m == "orb":
				self._det = cv2.ORB_create(
					nfeatures=int(self.settings.max_features),
					scoreType=cv2.ORB_HARRIS_SCORE,
				)
			else:
				self._det = None
		except cv2.error as e:
			raise ConstructionFailure(f"cannot initialise {m} detector: {e}") from e
		self.metric = "l2" if m == "corners" else "hamming"

	def extract(self, image: Image) -> FeatureSet:
		image.validate()
		t0 = time.perf_counter()
		gray = to_gray01(image.pixels)
		work, (sx, sy) = downscale(gray, self.settings.working_max_side)
		if self.method == "corners":
			pts, strengths, descriptors = self._corners(work)
		else:
			pts, strengths, descriptors = self._binary(work)

		# back to full-resolution pixel centres
		if pts.shape[0]:
			pts = np.stack([(pts[:, 0] + 0.5) * sx - 0.5, (pts[:, 1] + 0.5) * sy - 0.5], axis=1).astype(np.float32)
			pts[:, 0] = np.clip(pts[:, 0], 0.0, image.width - 1)
			pts[:, 1] = np.clip(pts[:, 1], 0.0, image.height - 1)

		order = np.argsort(-strengths, kind="stable")
		fs = FeatureSet(
			positions=pts[order],
			descriptors=descriptors[order],
			strengths=strengths[order],
			image_size=image.size,
			metric=self.metric,
		)
		log.debug(
			"extracted %d %s features from %s in %.1f ms",
			len(fs), self.method, image.path or "<array>", (time.perf_counter() - t0) * 1000.0,
		)
		return fs

	# -----------------------------
	# corners + patch descriptors
	# -----------------------------

	def _corners(self, work: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
		s = self.settings
		r = int(s.patch_radius)
		grid = np.arange(-r, r + 1, max(1, int(s.patch_stride)), dtype=np.int64)
		dim = grid.size * grid.size
		empty = (np.zeros((0, 2), np.float32), np.zeros((0,), np.float32), np.zeros((0, dim), np.float32))

		corners = cv2.goodFeaturesToTrack(
			work,
			maxCorners=int(s.max_features),
			qualityLevel=float(s.quality_level),
			minDistance=float(s.min_distance),
			blockSize=int(s.block_size),
			useHarrisDetector=False,
		)
		if corners is None or len(corners) == 0:
			return empty
		pts = corners.reshape(-1, 2).astype(np.float32)

		eig = cv2.cornerMinEigenVal(work, int(s.block_size))
		xi = np.clip(np.rint(pts[:, 0]).astype(np.int64), 0, work.shape[1] - 1)
		yi = np.clip(np.rint(pts[:, 1]).astype(np.int64), 0, work.shape[0] - 1)
		strengths = eig[yi, xi].astype(np.float32)
		keep = strengths >= float(s.min_strength)
		if not keep.any():
			return empty
		pts, xi, yi, strengths = pts[keep], xi[keep], yi[keep], strengths[keep]

		smooth = cv2.GaussianBlur(work, (0, 0), float(s.patch_blur_sigma))
		padded = cv2.copyMakeBorder(smooth, r, r, r, r, cv2.BORDER_REFLECT_101)
		oy, ox = np.meshgrid(grid, grid, indexing="ij")
		ys = (yi + r)[:, None] + oy.ravel()[None, :]
		xs = (xi + r)[:, None] + ox.ravel()[None, :]
		patches = padded[ys, xs].astype(np.float32)  # [N, dim]

		# mean/contrast normalisation -> invariant to exposure gain and offset
		patches -= patches.mean(axis=1, keepdims=True)
		norms = np.linalg.norm(patches, axis=1)
		textured = norms > 1e-6
		if not textured.any():
			return empty
		descriptors = (patches[textured] / norms[textured, None]).astype(np.float32)
		return pts[textured], strengths[textured], descriptors

	# -----------------------------
	# OpenCV binary detectors
	# -----------------------------

	def _binary(self, work: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
		gray_u8 = (np.clip(work, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
		kps, des = self._det.detectAndCompute(gray_u8, None)
		if des is None or not kps:
			size = 61 if self.method == "akaze" else 32
			return np.zeros((0, 2), np.float32), np.zeros((0,), np.float32), np.zeros((0, size), np.uint8)
		pts = np.float32([kp.pt for kp in kps]).reshape(-1, 2)
		strengths = np.float32([kp.response for kp in kps])
		h, w = work.shape[:2]
		inside = (pts[:, 0] >= 0) & (pts[:, 0] < w) & (pts[:, 1] >= 0) & (pts[:, 1] < h)
		pts, strengths, des = pts[inside], strengths[inside], des[inside]
		if pts.shape[0] > self.settings.max_features:
			top = np.argsort(-strengths, kind="stable")[: self.settings.max_features]
			top.sort()
			pts, strengths, des = pts[top], strengths[top], des[top]
		return pts, strengths, des
