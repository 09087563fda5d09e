from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import List, Union

import cv2
import numpy as np

from stackhub.services.errors import DecodeFailure, IOFailure
from stackhub.services.models import Image

log = logging.getLogger(__name__)

PathLike = Union[str, Path]

TIFF_EXTS = {".tif", ".tiff"}
NO_ALPHA_EXTS = {".jpg", ".jpeg", ".bmp"}
TIFF_DPI = 300


def _largest_page(pages: List[np.ndarray]) -> np.ndarray:
	best = pages[0]
	for page in pages[1:]:
		if page.shape[0] * page.shape[1] > best.shape[0] * best.shape[1]:
			best = page
	return best


def load_image(path: PathLike) -> Image:
	"""
	Decode an image file unchanged (bit depth and alpha kept). Multi-page TIFFs yield
	their largest page, which skips embedded thumbnails.
	"""
	if not str(path):
		raise DecodeFailure("image path is empty")
	p = Path(path)
	if not p.is_file():
		raise DecodeFailure("image file not found", str(p))
	try:
		if p.suffix.lower() in TIFF_EXTS:
			ok, pages = cv2.imreadmulti(str(p), flags=cv2.IMREAD_UNCHANGED)
			arr = _largest_page(list(pages)) if ok and pages else None
		else:
			arr = cv2.imread(str(p), cv2.IMREAD_UNCHANGED)
	except cv2.error as e:
		raise DecodeFailure(f"failed to decode image: {e}", str(p)) from e
	if arr is None:
		raise DecodeFailure("failed to decode image", str(p))
	if arr.dtype == np.float64:
		arr = arr.astype(np.float32)
	if arr.ndim == 3 and arr.shape[2] == 1:
		arr = arr[..., 0]
	image = Image(pixels=arr, path=str(p))
	log.debug("decoded %s: %dx%dx%d %s", p.name, image.width, image.height, image.channels, image.dtype)
	return image.validate()


def _write_params(suffix: str) -> List[int]:
	if suffix in TIFF_EXTS:
		return [
			cv2.IMWRITE_TIFF_COMPRESSION, 5,  # LZW
			cv2.IMWRITE_TIFF_RESUNIT, 2,  # inch
			cv2.IMWRITE_TIFF_XDPI, TIFF_DPI,
			cv2.IMWRITE_TIFF_YDPI, TIFF_DPI,
		]
	if suffix == ".png":
		return [cv2.IMWRITE_PNG_COMPRESSION, 3]
	return []


def save_image(path: PathLike, pixels: np.ndarray) -> str:
	"""
	Encode pixels to path (format from the extension). The file is written to a temporary
	sibling first and renamed, so a failed write never leaves a partial output behind.
	"""
	p = Path(path)
	suffix = p.suffix.lower()
	if not suffix:
		raise IOFailure("output path has no file extension", str(p))
	arr = pixels
	if suffix in NO_ALPHA_EXTS:
		if arr.ndim == 3 and arr.shape[2] == 4:
			arr = arr[..., :3]
		if arr.dtype != np.uint8:
			arr = (arr.astype(np.float32) / (65535.0 if arr.dtype == np.uint16 else 1.0) * 255.0 + 0.5).clip(0, 255).astype(np.uint8)
	try:
		p.parent.mkdir(parents=True, exist_ok=True)
	except OSError as e:
		raise IOFailure(f"cannot create output directory: {e}", str(p)) from e
	tmp = p.with_name(f".{p.stem}.{uuid.uuid4().hex[:8]}.part{p.suffix}")
	try:
		ok = cv2.imwrite(str(tmp), np.ascontiguousarray(arr), _write_params(suffix))
	except cv2.error as e:
		remove_quietly(tmp)
		raise IOFailure(f"failed to encode image: {e}", str(p)) from e
	if not ok:
		remove_quietly(tmp)
		raise IOFailure("failed to encode image", str(p))
	try:
		os.replace(tmp, p)
	except OSError as e:
		remove_quietly(tmp)
		raise IOFailure(f"failed to move output into place: {e}", str(p)) from e
	log.debug("wrote %s", p)
	return str(p)


def remove_quietly(path: PathLike) -> None:
	try:
		Path(path).unlink()
	except FileNotFoundError:
		pass
	except OSError as e:
		log.warning("could not remove %s: %s", path, e)
