from __future__ import annotations
from typing import Tuple
import cv2
import numpy as np


def max_value(dtype: np.dtype) -> float:
	if dtype == np.uint8:
		return 255.0
	if dtype == np.uint16:
		return 65535.0
	return 1.0


def to_float01(arr: np.ndarray) -> np.ndarray:
	"""
	Scale uint8/uint16/float32 pixel data to float32 in [0,1] (float input is passed through).
	"""
	return (arr.astype(np.float32) / np.float32(max_value(arr.dtype))).astype(np.float32)


def from_float01(arr: np.ndarray, dtype: np.dtype) -> np.ndarray:
	"""Integer output is clipped to the full range; float32 output keeps values outside [0,1]."""
	if dtype in (np.uint8, np.uint16):
		scale = max_value(dtype)
		return (np.clip(arr, 0.0, 1.0) * scale + 0.5).astype(dtype)
	return arr.astype(np.float32)


def split_alpha(arr: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
	"""
	Split a BGRA array into (BGR, mask) where mask is uint8 {0,1}.
	Arrays without alpha get an all-ones mask.
	"""
	h, w = arr.shape[:2]
	if arr.ndim == 3 and arr.shape[2] == 4:
		return np.ascontiguousarray(arr[..., :3]), (arr[..., 3] > 0).astype(np.uint8)
	return arr, np.ones((h, w), dtype=np.uint8)


def with_alpha(arr: np.ndarray, mask: np.ndarray) -> np.ndarray:
	"""
	Attach mask as an alpha channel (full-scale where mask is set), the way the aligned frames are stored.
	"""
	if arr.ndim == 2 or arr.shape[2] == 1:
		arr = cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_GRAY2BGR)
	alpha = (mask > 0).astype(arr.dtype) * arr.dtype.type(max_value(arr.dtype))
	return np.dstack([arr[..., :3], alpha])


def to_gray01(arr: np.ndarray) -> np.ndarray:
	"""
	Luminance in [0,1] as float32 [H,W]. Alpha is ignored.
	"""
	f = to_float01(arr)
	if f.ndim == 2:
		return f
	if f.shape[2] == 1:
		return f[..., 0]
	if f.shape[2] == 4:
		return cv2.cvtColor(f, cv2.COLOR_BGRA2GRAY)
	return cv2.cvtColor(f, cv2.COLOR_BGR2GRAY)


def to_color01(arr: np.ndarray) -> np.ndarray:
	"""
	Float32 [H,W,C] in [0,1] with the alpha channel removed; gray images keep a single channel.
	"""
	f = to_float01(arr)
	if f.ndim == 2:
		return f[..., np.newaxis]
	if f.shape[2] == 4:
		return np.ascontiguousarray(f[..., :3])
	return f


def downscale(arr: np.ndarray, max_side: int) -> Tuple[np.ndarray, Tuple[float, float]]:
	"""
	Shrink arr so that its longer side is at most max_side. Returns (array, (sx, sy)) with
	the full-resolution pixels per working pixel along each axis ((1.0, 1.0) when untouched).
	"""
	h, w = arr.shape[:2]
	side = max(h, w)
	if max_side <= 0 or side <= max_side:
		return arr, (1.0, 1.0)
	scale = float(side) / float(max_side)
	size = (max(1, int(round(w / scale))), max(1, int(round(h / scale))))
	small = cv2.resize(arr, size, interpolation=cv2.INTER_AREA)
	return small, (float(w) / float(size[0]), float(h) / float(size[1]))
