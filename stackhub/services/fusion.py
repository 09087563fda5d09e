from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from stackhub.services.config import FuserSettings
from stackhub.services.errors import AlignmentRejected, ConstructionFailure, DimensionMismatch, Outcome, StackError
from stackhub.services.image_io import load_image, save_image
from stackhub.services.image_utils import from_float01, split_alpha, to_color01
from stackhub.services.models import AlignedImage, Composite, Transform

log = logging.getLogger(__name__)

PathLike = Union[str, Path]
MODES = ("exposure", "focus")


def _to_gray(img: np.ndarray) -> np.ndarray:
	if img.ndim == 2:
		return img.astype(np.float32)
	return cv2.cvtColor(img.astype(np.float32), cv2.COLOR_BGR2GRAY)


def _contrast_weight(img: np.ndarray) -> np.ndarray:
	lap = cv2.Laplacian(_to_gray(img), ddepth=cv2.CV_32F, ksize=3)
	return np.abs(lap)


def _saturation_weight(img: np.ndarray) -> np.ndarray:
	# mean absolute difference between channels; zero for gray frames
	if img.ndim == 2:
		return np.zeros(img.shape, dtype=np.float32)
	b, g, r = img[..., 0], img[..., 1], img[..., 2]
	return ((np.abs(b - g) + np.abs(g - r) + np.abs(r - b)) / 3.0).astype(np.float32)


def _well_exposed_weight(img: np.ndarray, optimum: float = 0.5, width: float = 0.2) -> np.ndarray:
	gray = _to_gray(img)
	return np.exp(-((gray - optimum) ** 2) / (2.0 * width ** 2)).astype(np.float32)


def _focus_weight(img: np.ndarray, blur_size: int) -> np.ndarray:
	lap = cv2.Laplacian(_to_gray(img), ddepth=cv2.CV_32F, ksize=3)
	k = max(1, blur_size) | 1
	return cv2.GaussianBlur(lap * lap, (k, k), 0)


def quality_weight(img: np.ndarray, mask: np.ndarray, settings: FuserSettings) -> np.ndarray:
	"""
	Per-pixel quality of one frame (float32 [H,W], >= 0). Unfilled pixels (mask == 0) get 0
	so alignment borders never take part in the blend.
	"""
	if settings.mode == "focus":
		w = _focus_weight(img, settings.blur_size)
	else:
		w = np.zeros(img.shape[:2], dtype=np.float32)
		if settings.contrast_weight:
			w += settings.contrast_weight * _contrast_weight(img)
		if settings.saturation_weight:
			w += settings.saturation_weight * _saturation_weight(img)
		if settings.exposure_weight:
			w += settings.exposure_weight * _well_exposed_weight(img, settings.exposure_optimum, settings.exposure_width)
		if settings.blur_size > 1:
			k = settings.blur_size | 1
			w = cv2.GaussianBlur(w, (k, k), 0)
	return (w * (mask > 0)).astype(np.float32)


def _normalize_weights(weights: List[np.ndarray]) -> List[np.ndarray]:
	"""
	Scale weights to sum to 1 per pixel; where every weight is 0 all frames share equally.
	"""
	stack = np.stack(weights, axis=0)  # [N,H,W]
	den = np.sum(stack, axis=0)
	empty = den <= 0
	den = np.where(empty, 1.0, den)
	uniform = np.float32(1.0 / len(weights))
	return [np.where(empty, uniform, w / den).astype(np.float32) for w in weights]


def _gaussian_pyramid(img: np.ndarray, levels: int) -> List[np.ndarray]:
	pyr = [img]
	for _ in range(1, levels):
		img = cv2.pyrDown(img)
		pyr.append(img)
	return pyr


def _laplacian_pyramid(img: np.ndarray, levels: int) -> List[np.ndarray]:
	gp = _gaussian_pyramid(img, levels)
	lp: List[np.ndarray] = []
	for i in range(levels - 1):
		size = (gp[i].shape[1], gp[i].shape[0])
		up = cv2.pyrUp(gp[i + 1], dstsize=size)
		lp.append((gp[i] - up).astype(np.float32))
	lp.append(gp[-1].astype(np.float32))
	return lp


def _collapse_laplacian_pyr(lp: List[np.ndarray]) -> np.ndarray:
	img = lp[-1]
	for i in range(len(lp) - 2, -1, -1):
		size = (lp[i].shape[1], lp[i].shape[0])
		img = cv2.pyrUp(img, dstsize=size)
		img = (img + lp[i]).astype(np.float32)
	return img


def pyramid_levels(height: int, width: int, levels: int, min_size: int = 8) -> int:
	"""
	Number of pyramid levels such that the coarsest level keeps at least min_size pixels per side.
	"""
	side = min(height, width)
	if side <= min_size:
		return 1
	fit = int(math.floor(math.log2(side / float(min_size)))) + 1
	return max(1, min(int(levels), fit))


def load_aligned(path: PathLike, min_overlap: float = 0.5) -> AlignedImage:
	"""
	Read an aligned frame; its alpha channel (if any) is the validity mask.
	"""
	image = load_image(path)
	pixels, mask = split_alpha(np.asarray(image.pixels))
	overlap = float(mask.mean()) if mask.size else 0.0
	return AlignedImage(
		pixels=pixels,
		mask=mask,
		transform=Transform.identity(),
		overlap_ratio=overlap,
		valid=overlap >= min_overlap,
		path=image.path,
	)


class Fuser:
	"""
	Multi-resolution weighted blending of an aligned stack (Mertens-style exposure fusion,
	or contrast-driven focus stacking with mode='focus').
	"""

	def __init__(self, settings: Optional[FuserSettings] = None):
		self.settings = settings or FuserSettings()
		if self.settings.mode not in MODES:
			raise ConstructionFailure(f"unsupported fusion mode: {self.settings.mode}")
		if self.settings.levels < 1:
			raise ConstructionFailure("pyramid needs at least one level")
		try:
			cv2.pyrDown(np.zeros((2, 2), dtype=np.float32))
		except cv2.error as e:
			raise ConstructionFailure(f"OpenCV backend unavailable: {e}") from e

	@classmethod
	def create(cls, settings: Optional[FuserSettings] = None) -> Outcome["Fuser"]:
		try:
			return Outcome.success(cls(settings))
		except ConstructionFailure as e:
			log.warning("fuser construction failed: %s", e)
			return Outcome.failure(e)

	# -----------------------------
	# stack preparation
	# -----------------------------

	@staticmethod
	def check_stack(stack: Sequence[AlignedImage]) -> Tuple[int, int, int]:
		if not stack:
			raise DimensionMismatch("fusion stack is empty")
		first = stack[0]
		shape = (first.height, first.width, first.channels)
		for frame in stack[1:]:
			other = (frame.height, frame.width, frame.channels)
			if other != shape:
				raise DimensionMismatch(
					"frame is {}x{}x{}, stack is {}x{}x{}".format(other[1], other[0], other[2], shape[1], shape[0], shape[2]),
					frame.path,
				)
		return shape

	def _prepare(self, stack: Sequence[AlignedImage]) -> Tuple[List[np.ndarray], List[np.ndarray]]:
		"""
		Float frames and normalised weights of the valid frames. Unfilled pixels take the
		mean of the frames that do cover them so borders add no false detail to the pyramid.
		"""
		self.check_stack(stack)
		used = [f for f in stack if f.valid]
		if not used:
			raise AlignmentRejected(f"none of the {len(stack)} frames overlaps the reference sufficiently")
		frames = [to_color01(np.asarray(f.pixels)) for f in used]
		masks = [(np.asarray(f.mask) > 0) for f in used]
		coverage = np.sum(masks, axis=0).astype(np.float32)
		total = np.zeros_like(frames[0])
		for img, m in zip(frames, masks):
			total += img * m[..., np.newaxis]
		covered = coverage > 0
		fill = np.where(covered[..., np.newaxis], total / np.maximum(coverage, 1.0)[..., np.newaxis], np.mean(frames, axis=0))
		filled = [np.where(m[..., np.newaxis], img, fill).astype(np.float32) for img, m in zip(frames, masks)]
		# squeeze single-channel frames to 2D
		filled = [img[..., 0] if img.shape[2] == 1 else img for img in filled]
		weights = _normalize_weights([quality_weight(img, m.astype(np.uint8), self.settings) for img, m in zip(filled, masks)])
		return filled, weights

	def weight_maps(self, stack: Sequence[AlignedImage]) -> List[np.ndarray]:
		"""
		Normalised full-resolution weights per frame of the stack (zeros for excluded frames).
		"""
		_, weights = self._prepare(stack)
		it = iter(weights)
		return [next(it) if f.valid else np.zeros((f.height, f.width), dtype=np.float32) for f in stack]

	# -----------------------------
	# fusion
	# -----------------------------

	def fuse(self, stack: Sequence[AlignedImage]) -> Composite:
		"""
		Fuse an aligned stack. Raises DimensionMismatch / AlignmentRejected.
		"""
		t0 = time.perf_counter()
		frames, weights = self._prepare(stack)
		h, w = frames[0].shape[:2]
		levels = pyramid_levels(h, w, self.settings.levels, self.settings.min_level_size)

		def decompose(k: int) -> Tuple[List[np.ndarray], List[np.ndarray]]:
			return _laplacian_pyramid(frames[k], levels), _gaussian_pyramid(weights[k], levels)

		workers = max(1, int(self.settings.workers))
		if workers > 1 and len(frames) > 1:
			with ThreadPoolExecutor(max_workers=workers) as pool:
				pyramids = list(pool.map(decompose, range(len(frames))))
		else:
			pyramids = [decompose(k) for k in range(len(frames))]

		# per-level weighted sum, always accumulated in stack order
		fused_lp: List[np.ndarray] = []
		for lvl in range(levels):
			acc = np.zeros_like(pyramids[0][0][lvl], dtype=np.float32)
			for img_lp, weight_gp in pyramids:
				wl = weight_gp[lvl]
				if acc.ndim == 3:
					wl = wl[..., np.newaxis]
				acc += wl * img_lp[lvl]
			fused_lp.append(acc)

		fused = _collapse_laplacian_pyr(fused_lp)
		dtype = np.asarray(stack[0].pixels).dtype
		pixels = from_float01(fused, dtype)
		log.info(
			"fused %d/%d frames (%s, %d levels) in %.1f ms",
			len(frames), len(stack), self.settings.mode, levels, (time.perf_counter() - t0) * 1000.0,
		)
		return Composite(pixels=pixels, frames_used=len(frames))

	def fuse_images(self, input_paths: Sequence[PathLike], output_filename: PathLike) -> Outcome[int]:
		"""
		Fuse aligned image files into output_filename. Returns the number of frames used;
		frames whose alpha coverage is below min_overlap are left out. No output on failure.
		"""
		try:
			if not input_paths:
				raise DimensionMismatch("no input images given")
			stack = [load_aligned(p, self.settings.min_overlap) for p in input_paths]
			self.check_stack(stack)
			composite = self.fuse(stack)
			save_image(output_filename, composite.pixels)
		except StackError as e:
			log.warning("fuse_images failed [%s]: %s", e.kind, e)
			return Outcome.failure(e)
		except cv2.error as e:
			err = StackError(f"OpenCV error: {e}", str(output_filename))
			log.warning("fuse_images failed: %s", err)
			return Outcome.failure(err)
		if composite.frames_used < len(stack):
			log.warning("%d of %d frames excluded for insufficient overlap", len(stack) - composite.frames_used, len(stack))
		return Outcome.success(composite.frames_used)
