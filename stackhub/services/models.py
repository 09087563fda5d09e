from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from stackhub.services.errors import DecodeFailure


@dataclass(frozen=True)
class Image:
	"""
	Decoded raster plus the path it came from (for diagnostics only).

	pixels: [H,W] or [H,W,C] with C in {1,3,4}, channel order BGR(A) as decoded by OpenCV.
	pixels is stored as a read-only view; the array passed in stays writable.
	"""

	pixels: np.ndarray
	path: Optional[str] = None

	def __post_init__(self) -> None:
		if not isinstance(self.pixels, np.ndarray):
			raise TypeError("pixels must be a numpy ndarray")
		# read-only view; the caller keeps a writable array
		view = self.pixels.view()
		view.setflags(write=False)
		object.__setattr__(self, "pixels", view)

	@property
	def height(self) -> int:
		return int(self.pixels.shape[0]) if self.pixels.ndim >= 1 else 0

	@property
	def width(self) -> int:
		return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

	@property
	def channels(self) -> int:
		if self.pixels.ndim == 2:
			return 1
		return int(self.pixels.shape[2]) if self.pixels.ndim == 3 else 0

	@property
	def dtype(self) -> np.dtype:
		return self.pixels.dtype

	@property
	def size(self) -> Tuple[int, int]:
		return (self.width, self.height)

	def validate(self) -> "Image":
		if self.pixels.ndim not in (2, 3) or self.pixels.size == 0 or self.width <= 0 or self.height <= 0:
			raise DecodeFailure("image buffer is empty or has an unsupported shape {}".format(self.pixels.shape), self.path)
		if self.channels not in (1, 3, 4):
			raise DecodeFailure(f"unsupported channel count {self.channels}", self.path)
		if self.pixels.dtype not in (np.uint8, np.uint16, np.float32):
			raise DecodeFailure(f"unsupported pixel type {self.pixels.dtype}", self.path)
		return self


@dataclass
class FeatureSet:
	"""
	Features of one image. positions are (x, y) in full-resolution pixel coordinates,
	row i of `descriptors` belongs to positions[i]; rows are ordered by decreasing strength.
	"""

	positions: np.ndarray  # [N,2] float32
	descriptors: np.ndarray  # [N,D] float32 (l2) or uint8 (hamming)
	strengths: np.ndarray  # [N] float32
	image_size: Tuple[int, int]  # (width, height)
	metric: str = "l2"

	def __len__(self) -> int:
		return int(self.positions.shape[0])

	@classmethod
	def empty(cls, image_size: Tuple[int, int], descriptor_size: int = 0, metric: str = "l2") -> "FeatureSet":
		dtype = np.uint8 if metric == "hamming" else np.float32
		return cls(
			positions=np.zeros((0, 2), dtype=np.float32),
			descriptors=np.zeros((0, descriptor_size), dtype=dtype),
			strengths=np.zeros((0,), dtype=np.float32),
			image_size=image_size,
			metric=metric,
		)


@dataclass(frozen=True)
class Correspondence:
	reference_index: int
	candidate_index: int
	distance: float


@dataclass
class MatchSet:
	matches: List[Correspondence] = field(default_factory=list)

	def __len__(self) -> int:
		return len(self.matches)

	def __iter__(self) -> Iterator[Correspondence]:
		return iter(self.matches)

	def point_pairs(self, reference: FeatureSet, candidate: FeatureSet) -> Tuple[np.ndarray, np.ndarray]:
		"""
		Return (reference_points, candidate_points) as float64 [N,2] arrays in match order.
		"""
		if not self.matches:
			return np.zeros((0, 2), dtype=np.float64), np.zeros((0, 2), dtype=np.float64)
		ref_idx = np.array([m.reference_index for m in self.matches], dtype=np.int64)
		cand_idx = np.array([m.candidate_index for m in self.matches], dtype=np.int64)
		return reference.positions[ref_idx].astype(np.float64), candidate.positions[cand_idx].astype(np.float64)


@dataclass(frozen=True)
class Transform:
	"""
	3x3 matrix mapping candidate-image coordinates onto reference-image coordinates.
	"""

	matrix: np.ndarray
	model: str = "homography"
	inliers: int = 0
	total: int = 0
	rmse_px: float = 0.0
	median_px: float = 0.0

	@classmethod
	def identity(cls) -> "Transform":
		return cls(matrix=np.eye(3, dtype=np.float64), model="identity")

	@property
	def is_identity(self) -> bool:
		return bool(np.array_equal(self.matrix, np.eye(3)))

	@property
	def inverse(self) -> np.ndarray:
		return np.linalg.inv(self.matrix)

	def apply(self, points: np.ndarray) -> np.ndarray:
		"""Map [N,2] candidate points to reference coordinates."""
		return project_points(self.matrix, points)

	def to_dict(self) -> dict:
		return {
			"model": self.model,
			"matrix": [[float(v) for v in row] for row in self.matrix],
			"inliers": int(self.inliers),
			"total": int(self.total),
			"rmse_px": float(self.rmse_px),
			"median_px": float(self.median_px),
		}


@dataclass(frozen=True)
class AlignedImage:
	pixels: np.ndarray
	mask: np.ndarray  # [H,W] uint8, 1 where the pixel was filled from the source
	transform: Transform
	overlap_ratio: float
	valid: bool
	path: Optional[str] = None

	@property
	def height(self) -> int:
		return int(self.pixels.shape[0])

	@property
	def width(self) -> int:
		return int(self.pixels.shape[1])

	@property
	def channels(self) -> int:
		return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])


@dataclass(frozen=True)
class Composite:
	pixels: np.ndarray
	frames_used: int


def project_points(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
	pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
	homog = np.hstack([pts, np.ones((pts.shape[0], 1), dtype=np.float64)])
	mapped = homog @ np.asarray(matrix, dtype=np.float64).T
	w = mapped[:, 2:3]
	with np.errstate(divide="ignore", invalid="ignore"):
		return mapped[:, :2] / w
