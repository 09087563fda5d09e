from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from stackhub.services.config import AlignerSettings
from stackhub.services.errors import ConstructionFailure, Outcome, ReferenceNotSet, StackError
from stackhub.services.estimation import estimate_transform, min_samples
from stackhub.services.features import FeatureExtractor
from stackhub.services.image_io import load_image, save_image
from stackhub.services.image_utils import split_alpha, with_alpha
from stackhub.services.matching import match_features
from stackhub.services.models import AlignedImage, FeatureSet, Image, Transform
from stackhub.services.warping import warp_image

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


class AlignerState(str, Enum):
	UNINITIALIZED = "uninitialized"
	REFERENCE_SET = "reference_set"


@dataclass(frozen=True)
class ReferenceCache:
	"""Everything kept from the reference image: its size and its features, never its pixels."""

	path: Optional[str]
	image_size: Tuple[int, int]
	features: FeatureSet
	is_preview: bool


def _working_scale(image: Image, max_side: int) -> float:
	side = max(image.width, image.height)
	if max_side <= 0 or side <= max_side:
		return 1.0
	return float(side) / float(max_side)


class Aligner:
	"""
	Aligns candidate images onto one reference image.

	The reference features are computed once by set_reference_image() and reused, read-only,
	by every align_image() call; concurrent align_image() calls are therefore safe, but the
	caller must not change the reference while alignments are in flight.
	"""

	def __init__(self, settings: Optional[AlignerSettings] = None):
		self.settings = settings or AlignerSettings()
		self.preview_settings = self.settings.preview()
		try:
			min_samples(self.settings.estimator.model)
			self._extractor = FeatureExtractor(self.settings.extractor)
			self._preview_extractor = FeatureExtractor(self.preview_settings.extractor)
		except ValueError as e:
			raise ConstructionFailure(f"invalid aligner settings: {e}") from e
		except cv2.error as e:
			raise ConstructionFailure(f"OpenCV backend unavailable: {e}") from e
		self._reference: Optional[ReferenceCache] = None

	@classmethod
	def create(cls, settings: Optional[AlignerSettings] = None) -> Outcome["Aligner"]:
		try:
			return Outcome.success(cls(settings))
		except ConstructionFailure as e:
			log.warning("aligner construction failed: %s", e)
			return Outcome.failure(e)

	@property
	def state(self) -> AlignerState:
		return AlignerState.UNINITIALIZED if self._reference is None else AlignerState.REFERENCE_SET

	@property
	def reference(self) -> Optional[ReferenceCache]:
		return self._reference

	def _settings_for(self, is_preview: bool) -> AlignerSettings:
		return self.preview_settings if is_preview else self.settings

	def _extractor_for(self, is_preview: bool) -> FeatureExtractor:
		return self._preview_extractor if is_preview else self._extractor

	# -----------------------------
	# reference
	# -----------------------------

	def set_reference(self, image: Image, is_preview: bool = False) -> ReferenceCache:
		"""
		Replace the cached reference with the features of `image`. Raises StackError.
		"""
		self._reference = None
		image.validate()
		features = self._extractor_for(is_preview).extract(image)
		if len(features) < min_samples(self.settings.estimator.model):
			log.warning("reference %s has only %d features", image.path or "<array>", len(features))
		self._reference = ReferenceCache(
			path=image.path,
			image_size=image.size,
			features=features,
			is_preview=is_preview,
		)
		return self._reference

	def set_reference_image(self, path: PathLike, output_path: Optional[PathLike] = None, is_preview: bool = False) -> Outcome[Image]:
		"""
		Decode the reference, cache its features and optionally write a copy to output_path.
		On failure the previous reference is dropped and the aligner is UNINITIALIZED.
		"""
		t0 = time.perf_counter()
		try:
			self._reference = None
			image = load_image(path)
			ref = self.set_reference(image, is_preview=is_preview)
			if output_path:
				save_image(output_path, with_alpha(*split_alpha(np.asarray(image.pixels))))
		except StackError as e:
			self._reference = None
			log.warning("set_reference_image failed [%s]: %s", e.kind, e)
			return Outcome.failure(e)
		except cv2.error as e:
			self._reference = None
			err = StackError(f"OpenCV error: {e}", str(path))
			log.warning("set_reference_image failed: %s", err)
			return Outcome.failure(err)
		log.info(
			"reference set: %s (%dx%d, %d features, preview=%s) in %.1f ms",
			Path(path).name, ref.image_size[0], ref.image_size[1], len(ref.features), is_preview,
			(time.perf_counter() - t0) * 1000.0,
		)
		return Outcome.success(image)

	# -----------------------------
	# alignment
	# -----------------------------

	def estimate(self, image: Image, is_preview: bool = False) -> Transform:
		"""
		Extract -> match -> estimate against the cached reference. Raises StackError.
		"""
		ref = self._reference
		if ref is None:
			raise ReferenceNotSet("set_reference_image() must succeed before aligning", image.path)
		image.validate()
		settings = self._settings_for(is_preview)
		# features must come from the same working resolution as the cached reference
		extractor = self._extractor_for(ref.is_preview)
		features = extractor.extract(image)
		matches = match_features(ref.features, features, settings.matcher)
		scale = _working_scale(image, extractor.settings.working_max_side)
		return estimate_transform(matches, ref.features, features, settings.estimator, pixel_scale=scale)

	def align_array(self, image: Image, is_preview: bool = False) -> AlignedImage:
		"""
		Full pipeline on an in-memory image. Raises StackError.
		"""
		transform = self.estimate(image, is_preview=is_preview)
		ref = self._reference
		return warp_image(image, transform, ref.image_size, self._settings_for(is_preview).warper)

	def align_image(self, path: PathLike, output_path: Optional[PathLike] = None, is_preview: bool = False) -> Outcome[AlignedImage]:
		"""
		Align the image at path onto the reference and write it (mask as alpha) to output_path.
		Nothing is written when any stage fails.
		"""
		t0 = time.perf_counter()
		try:
			if self._reference is None:
				raise ReferenceNotSet("set_reference_image() must succeed before aligning", str(path))
			image = load_image(path)
			aligned = self.align_array(image, is_preview=is_preview)
			if output_path:
				save_image(output_path, with_alpha(aligned.pixels, aligned.mask))
		except StackError as e:
			log.warning("align_image failed for %s [%s]: %s", path, e.kind, e)
			return Outcome.failure(e)
		except cv2.error as e:
			err = StackError(f"OpenCV error: {e}", str(path))
			log.warning("align_image failed for %s: %s", path, err)
			return Outcome.failure(err)
		t = aligned.transform
		log.info(
			"aligned %s: %d/%d inliers, rmse %.2f px, overlap %.3f%s in %.1f ms",
			Path(path).name, t.inliers, t.total, t.rmse_px, aligned.overlap_ratio,
			"" if aligned.valid else " (below minimum overlap)",
			(time.perf_counter() - t0) * 1000.0,
		)
		return Outcome.success(aligned)
