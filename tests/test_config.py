"""
Settings and result-type tests
"""

from pathlib import Path

import pytest

from stackhub.services.config import AlignerSettings, ServiceSettings
from stackhub.services.errors import (
	AlignmentRejected,
	DecodeFailure,
	InsufficientCorrespondences,
	Outcome,
	StackError,
)


class TestSettings:

	def test_preview_settings(self):
		base = AlignerSettings()
		preview = base.preview()
		assert preview.extractor.working_max_side == 640
		assert preview.extractor.max_features == 800
		assert preview.estimator.max_iterations == base.estimator.max_iterations // 4
		assert preview.warper.interpolation == "nearest"
		# thresholds are shared
		assert preview.matcher == base.matcher
		assert preview.estimator.reprojection_threshold == base.estimator.reprojection_threshold

	def test_service_settings_from_env(self, monkeypatch, tmp_path):
		monkeypatch.setenv("STACKHUB_DATA_DIR", str(tmp_path))
		monkeypatch.setenv("STACKHUB_OUTPUT_FORMAT", ".png")
		monkeypatch.setenv("STACKHUB_FUSION_MODE", "focus")
		s = ServiceSettings.from_env()
		assert s.data_dir == tmp_path
		assert s.output_format == "png"
		assert s.fusion_mode == "focus"

	def test_service_settings_defaults(self, monkeypatch):
		for name in ("STACKHUB_DATA_DIR", "STACKHUB_LOG_LEVEL", "STACKHUB_FUSION_MODE", "STACKHUB_OUTPUT_FORMAT"):
			monkeypatch.delenv(name, raising=False)
		s = ServiceSettings.from_env()
		assert s.data_dir == Path("data")
		assert s.log_level == "INFO"
		assert s.output_format == "tif"


class TestOutcome:

	def test_success(self):
		o = Outcome.success(3)
		assert o and o.ok
		assert o.kind is None
		assert o.unwrap() == 3

	def test_failure_unwrap_raises(self):
		o = Outcome.failure(DecodeFailure("bad bytes", "a.png"))
		assert not o
		assert o.kind == "decode_failure"
		with pytest.raises(DecodeFailure, match=r"bad bytes \(a.png\)"):
			o.unwrap()

	def test_error_hierarchy(self):
		err = InsufficientCorrespondences("3 matches")
		assert isinstance(err, AlignmentRejected)
		assert isinstance(err, StackError)
		assert err.kind == "insufficient_correspondences"
		assert AlignmentRejected.kind == "alignment_rejected"
