"""
Unit tests for multi-resolution fusion
"""

from dataclasses import replace

import cv2
import numpy as np
import pytest

from stackhub.services.config import FuserSettings
from stackhub.services.errors import AlignmentRejected, ConstructionFailure, DimensionMismatch
from stackhub.services.fusion import Fuser, load_aligned, pyramid_levels
from stackhub.services.models import AlignedImage, Transform

from synthetic import gradient_color, textured_scene


def _aligned(pixels, mask=None, valid=True, path=None):
	if mask is None:
		mask = np.ones(pixels.shape[:2], dtype=np.uint8)
	return AlignedImage(
		pixels=pixels,
		mask=mask,
		transform=Transform.identity(),
		overlap_ratio=float(mask.mean()),
		valid=valid,
		path=path,
	)


def _bgra(bgr, alpha=255):
	a = np.full(bgr.shape[:2], 0, dtype=np.uint8)
	a[...] = alpha
	return np.dstack([bgr, a])


class TestFuserConstruction:

	def test_unknown_mode(self):
		outcome = Fuser.create(FuserSettings(mode="median"))
		assert isinstance(outcome.error, ConstructionFailure)

	def test_zero_levels(self):
		with pytest.raises(ConstructionFailure):
			Fuser(FuserSettings(levels=0))

	@pytest.mark.parametrize("h, w, levels, expected", [
		(100, 100, 7, 4),
		(1000, 1500, 7, 7),
		(8, 200, 7, 1),
		(64, 64, 2, 2),
		(3, 3, 7, 1),
	])
	def test_pyramid_levels(self, h, w, levels, expected):
		assert pyramid_levels(h, w, levels, 8) == expected


class TestFuse:

	@pytest.mark.parametrize("n", [1, 2, 4])
	def test_identical_stack_reproduces_input(self, n):
		"""N copies of the same frame fuse back to that frame"""
		frame = textured_scene(width=96, height=64)
		composite = Fuser().fuse([_aligned(frame.copy()) for _ in range(n)])
		assert composite.frames_used == n
		assert composite.pixels.dtype == np.uint8
		assert np.array_equal(composite.pixels, frame)

	def test_identical_gray_stack(self):
		frame = textured_scene(width=80, height=60, channels=1)
		composite = Fuser().fuse([_aligned(frame), _aligned(frame.copy())])
		assert composite.pixels.shape == frame.shape
		assert np.array_equal(composite.pixels, frame)

	def test_identical_16bit_stack(self):
		frame = (gradient_color().astype(np.uint16) * 257)
		composite = Fuser().fuse([_aligned(frame), _aligned(frame.copy())])
		assert composite.pixels.dtype == np.uint16
		assert np.abs(composite.pixels.astype(np.int32) - frame.astype(np.int32)).max() <= 1

	def test_identical_float_stack_keeps_values_above_one(self):
		"""Float frames are not limited to [0,1]; fusion must not clip them"""
		frame = textured_scene(width=96, height=64).astype(np.float32) * np.float32(4.0 / 255.0)
		assert frame.max() > 1.0
		composite = Fuser().fuse([_aligned(frame), _aligned(frame.copy())])
		assert composite.pixels.dtype == np.float32
		assert np.allclose(composite.pixels, frame, atol=1e-4)

	def test_empty_stack(self):
		with pytest.raises(DimensionMismatch):
			Fuser().fuse([])

	def test_dimension_mismatch(self):
		a = _aligned(gradient_color(width=64, height=48))
		b = _aligned(gradient_color(width=65, height=48), path="b.png")
		with pytest.raises(DimensionMismatch) as exc:
			Fuser().fuse([a, b])
		assert exc.value.path == "b.png"

	def test_channel_mismatch(self):
		color = gradient_color()
		gray = cv2.cvtColor(color, cv2.COLOR_BGR2GRAY)
		with pytest.raises(DimensionMismatch):
			Fuser().fuse([_aligned(color), _aligned(gray)])

	def test_invalid_frame_excluded(self):
		"""A frame flagged invalid contributes nothing"""
		frame = textured_scene(width=64, height=64)
		junk = np.full_like(frame, 255)
		composite = Fuser().fuse([_aligned(frame), _aligned(junk, valid=False), _aligned(frame.copy())])
		assert composite.frames_used == 2
		assert np.array_equal(composite.pixels, frame)

	def test_no_valid_frames(self):
		frame = gradient_color()
		with pytest.raises(AlignmentRejected):
			Fuser().fuse([_aligned(frame, valid=False), _aligned(frame, valid=False)])

	def test_well_exposed_frame_dominates(self):
		"""Mid-gray frame outweighs a nearly black one wherever both are present"""
		dark = np.full((64, 64, 3), 10, dtype=np.uint8)
		mid = np.full((64, 64, 3), 128, dtype=np.uint8)
		stack = [_aligned(dark), _aligned(mid)]
		w_dark, w_mid = Fuser().weight_maps(stack)
		assert np.all(w_mid > w_dark)
		assert np.allclose(w_dark + w_mid, 1.0, atol=1e-5)
		fused = Fuser().fuse(stack).pixels.astype(np.float32)
		assert np.abs(fused - 128).mean() < np.abs(fused - 10).mean()

	def test_each_exposure_wins_where_it_is_well_exposed(self):
		"""Half-dark/half-bright scene at two exposures: each frame dominates its own region"""
		scene = np.full((64, 64), 0.15, dtype=np.float32)
		scene[:, 32:] = 0.85

		def expose(gain):
			gray = (np.clip(scene * gain, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
			return np.dstack([gray, gray, gray])

		under, over = expose(0.6), expose(3.0)
		stack = [_aligned(under), _aligned(over)]
		w_under, w_over = Fuser().weight_maps(stack)
		left, right = np.s_[:, :24], np.s_[:, 40:]
		# shadows come from the brighter frame, highlights from the darker one
		assert np.all(w_over[left] > w_under[left])
		assert np.all(w_under[right] > w_over[right])
		assert w_over[left].mean() > 0.8
		assert w_under[right].mean() > 0.8

		fused = Fuser().fuse(stack).pixels.astype(np.float32)
		u, o = under.astype(np.float32), over.astype(np.float32)
		assert np.abs(fused[left] - o[left]).mean() < np.abs(fused[left] - u[left]).mean()
		assert np.abs(fused[right] - u[right]).mean() < np.abs(fused[right] - o[right]).mean()

	def test_unfilled_pixels_carry_no_weight(self):
		frame = textured_scene(width=64, height=64)
		mask = np.ones((64, 64), dtype=np.uint8)
		mask[:, :10] = 0
		partial = frame.copy()
		partial[:, :10] = 0
		w_full, w_partial = Fuser().weight_maps([_aligned(frame), _aligned(partial, mask)])
		assert np.all(w_partial[:, :10] == 0)
		assert np.allclose(w_full[:, :10], 1.0)
		composite = Fuser().fuse([_aligned(frame), _aligned(partial, mask)])
		assert np.array_equal(composite.pixels, frame)

	def test_weight_maps_zero_for_excluded(self):
		frame = gradient_color()
		maps = Fuser().weight_maps([_aligned(frame), _aligned(frame, valid=False)])
		assert np.all(maps[1] == 0)
		assert np.allclose(maps[0], 1.0)

	def test_workers_do_not_change_result(self):
		frames = [_aligned(textured_scene(width=90, height=70, seed=s)) for s in range(4)]
		single = Fuser(FuserSettings(workers=1)).fuse(frames).pixels
		pooled = Fuser(FuserSettings(workers=3)).fuse(frames).pixels
		assert np.array_equal(single, pooled)

	def test_focus_mode_prefers_sharp_frame(self):
		sharp = textured_scene(width=96, height=96, seed=6)
		blurred = cv2.GaussianBlur(sharp, (9, 9), 3)
		fuser = Fuser(replace(FuserSettings(), mode="focus"))
		w_sharp, w_blur = fuser.weight_maps([_aligned(sharp), _aligned(blurred)])
		assert w_sharp.mean() > w_blur.mean()
		fused = fuser.fuse([_aligned(sharp), _aligned(blurred)]).pixels.astype(np.float32)
		assert np.abs(fused - sharp).mean() < np.abs(fused - blurred).mean()


class TestFuseImages:

	def test_fuses_files_with_alpha(self, tmp_path):
		frame = textured_scene(width=80, height=60)
		paths = []
		for i in range(3):
			p = tmp_path / f"f{i}_aligned.png"
			cv2.imwrite(str(p), _bgra(frame))
			paths.append(p)
		out = tmp_path / "fused" / "fused.png"
		outcome = Fuser().fuse_images(paths, out)
		assert outcome.ok
		assert outcome.value == 3
		assert np.array_equal(cv2.imread(str(out), cv2.IMREAD_UNCHANGED), frame)

	def test_low_coverage_file_excluded(self, tmp_path):
		frame = textured_scene(width=80, height=60)
		sparse = _bgra(np.full_like(frame, 255), alpha=0)
		sparse[:10, :10, 3] = 255
		paths = [tmp_path / "a.png", tmp_path / "b.png", tmp_path / "c.png"]
		cv2.imwrite(str(paths[0]), _bgra(frame))
		cv2.imwrite(str(paths[1]), sparse)
		cv2.imwrite(str(paths[2]), frame)
		outcome = Fuser().fuse_images(paths, tmp_path / "fused.tif")
		assert outcome.value == 2
		assert np.array_equal(cv2.imread(str(tmp_path / "fused.tif"), cv2.IMREAD_UNCHANGED), frame)
		assert not load_aligned(paths[1]).valid

	def test_mismatched_files_write_nothing(self, tmp_path):
		a, b = tmp_path / "a.png", tmp_path / "b.png"
		cv2.imwrite(str(a), gradient_color(width=64, height=48))
		cv2.imwrite(str(b), gradient_color(width=48, height=64))
		out = tmp_path / "fused.png"
		outcome = Fuser().fuse_images([a, b], out)
		assert isinstance(outcome.error, DimensionMismatch)
		assert not out.exists()

	def test_empty_input_list(self, tmp_path):
		outcome = Fuser().fuse_images([], tmp_path / "fused.png")
		assert outcome.kind == "dimension_mismatch"

	def test_unreadable_input(self, tmp_path):
		outcome = Fuser().fuse_images([tmp_path / "missing.png"], tmp_path / "fused.png")
		assert outcome.kind == "decode_failure"
		assert not (tmp_path / "fused.png").exists()
