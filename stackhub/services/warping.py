from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np

from stackhub.services.config import WarperSettings
from stackhub.services.models import AlignedImage, Image, Transform

log = logging.getLogger(__name__)

INTERPOLATION = {
	"nearest": cv2.INTER_NEAREST,
	"linear": cv2.INTER_LINEAR,
	"cubic": cv2.INTER_CUBIC,
}


def _warp(arr: np.ndarray, M: np.ndarray, size: Tuple[int, int], flags: int, border: int) -> np.ndarray:
	"""
	Inverse-mapped resampling: OpenCV inverts M (candidate -> reference) and samples the
	source for every output pixel. Affine matrices take the cheaper warpAffine path.
	"""
	if np.allclose(M[2], [0.0, 0.0, 1.0]):
		return cv2.warpAffine(arr, M[:2].astype(np.float64), size, flags=flags, borderMode=border, borderValue=0)
	return cv2.warpPerspective(arr, M.astype(np.float64), size, flags=flags, borderMode=border, borderValue=0)


def warp_image(image: Image, transform: Transform, output_size: Tuple[int, int], settings: WarperSettings = WarperSettings()) -> AlignedImage:
	"""
	Resample image into the reference frame of size output_size=(width, height).

	Output pixels whose source location falls outside the image are unfilled: their mask
	value is 0 and their pixels are 0. overlap_ratio is the filled fraction.
	"""
	image.validate()
	w, h = int(output_size[0]), int(output_size[1])
	src = np.asarray(image.pixels)
	if src.ndim == 3 and src.shape[2] == 4:
		src = src[..., :3]

	if transform.is_identity and (image.width, image.height) == (w, h):
		pixels = src.copy()
		mask = np.ones((h, w), dtype=np.uint8)
	else:
		if settings.interpolation not in INTERPOLATION:
			raise ValueError(f"Unsupported interpolation: {settings.interpolation}")
		flags = INTERPOLATION[settings.interpolation]
		M = np.asarray(transform.matrix, dtype=np.float64)
		pixels = _warp(np.ascontiguousarray(src), M, (w, h), flags, cv2.BORDER_REPLICATE)
		ones = np.ones(src.shape[:2], dtype=np.uint8)
		mask = _warp(ones, M, (w, h), cv2.INTER_NEAREST, cv2.BORDER_CONSTANT)
		mask = (mask > 0).astype(np.uint8)
		pixels[mask == 0] = 0

	overlap = float(mask.sum()) / float(w * h) if w * h else 0.0
	valid = overlap >= float(settings.min_overlap)
	log.debug("warped %s: overlap %.3f (%s)", image.path or "<array>", overlap, "valid" if valid else "insufficient overlap")
	return AlignedImage(
		pixels=pixels,
		mask=mask,
		transform=transform,
		overlap_ratio=overlap,
		valid=valid,
		path=image.path,
	)
