"""
Tunable defaults for alignment and fusion.

None of these thresholds are exposed by the public aligner/fuser calls; they are fixed
per instance through the settings objects below. Override them programmatically
(dataclasses.replace) or, for the job service, through STACKHUB_* environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path


@dataclass(frozen=True)
class ExtractorSettings:
	method: str = "corners"  # corners | akaze | orb
	max_features: int = 2000
	working_max_side: int = 2048  # detection runs on a copy no larger than this
	quality_level: float = 0.01
	min_distance: float = 3.0
	block_size: int = 3
	min_strength: float = 1e-5  # min eigenvalue on [0,1] gray
	patch_radius: int = 8
	patch_stride: int = 2
	patch_blur_sigma: float = 1.0


@dataclass(frozen=True)
class MatcherSettings:
	ratio: float = 0.8
	max_matches: int = 0  # 0 keeps every accepted match


@dataclass(frozen=True)
class EstimatorSettings:
	model: str = "similarity"  # translation | similarity | affine | homography
	reprojection_threshold: float = 3.0  # pixels at working resolution
	max_iterations: int = 2000
	min_inliers: int = 6
	min_inlier_fraction: float = 0.5
	min_scale: float = 0.5
	max_scale: float = 2.0
	max_anisotropy: float = 1.5
	max_perspective: float = 1e-3
	seed: int = 0


@dataclass(frozen=True)
class WarperSettings:
	interpolation: str = "linear"  # linear | nearest | cubic
	min_overlap: float = 0.5


@dataclass(frozen=True)
class AlignerSettings:
	extractor: ExtractorSettings = field(default_factory=ExtractorSettings)
	matcher: MatcherSettings = field(default_factory=MatcherSettings)
	estimator: EstimatorSettings = field(default_factory=EstimatorSettings)
	warper: WarperSettings = field(default_factory=WarperSettings)

	def preview(self) -> "AlignerSettings":
		"""Lower resolution and iteration budget; same stages and thresholds otherwise."""
		return replace(
			self,
			extractor=replace(self.extractor, working_max_side=min(self.extractor.working_max_side, 640), max_features=min(self.extractor.max_features, 800)),
			estimator=replace(self.estimator, max_iterations=max(1, self.estimator.max_iterations // 4)),
			warper=replace(self.warper, interpolation="nearest"),
		)


@dataclass(frozen=True)
class FuserSettings:
	mode: str = "exposure"  # exposure | focus
	levels: int = 7
	min_level_size: int = 8
	contrast_weight: float = 0.0
	saturation_weight: float = 0.2
	exposure_weight: float = 1.0
	exposure_optimum: float = 0.5
	exposure_width: float = 0.2
	blur_size: int = 5
	min_overlap: float = 0.5  # applied when validity is derived from an alpha channel
	workers: int = 1


@dataclass(frozen=True)
class ServiceSettings:
	data_dir: Path = Path("data")
	log_level: str = "INFO"
	fusion_mode: str = "exposure"
	output_format: str = "tif"
	preview_max_width: int = 512

	@classmethod
	def from_env(cls) -> "ServiceSettings":
		return cls(
			data_dir=Path(os.environ.get("STACKHUB_DATA_DIR", "data")),
			log_level=os.environ.get("STACKHUB_LOG_LEVEL", "INFO"),
			fusion_mode=os.environ.get("STACKHUB_FUSION_MODE", "exposure"),
			output_format=os.environ.get("STACKHUB_OUTPUT_FORMAT", "tif").lstrip("."),
		)
