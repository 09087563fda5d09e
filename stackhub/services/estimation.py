from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from stackhub.services.config import EstimatorSettings
from stackhub.services.errors import AlignmentRejected, InsufficientCorrespondences
from stackhub.services.models import FeatureSet, MatchSet, Transform, project_points

log = logging.getLogger(__name__)

REFINE_ITERATIONS = 5


# -----------------------------
# Closed-form fits (candidate -> reference)
# -----------------------------

def fit_translation(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
	t = (dst - src).mean(axis=0)
	return np.array([[1.0, 0.0, t[0]], [0.0, 1.0, t[1]], [0.0, 0.0, 1.0]], dtype=np.float64)


def fit_similarity(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
	"""
	Least-squares rotation + uniform scale + translation (Umeyama), reflections excluded.
	"""
	n = src.shape[0]
	mu_s = src.mean(axis=0)
	mu_d = dst.mean(axis=0)
	sc = src - mu_s
	dc = dst - mu_d
	var_s = float((sc ** 2).sum()) / n
	if var_s < 1e-12:
		return None
	cov = dc.T @ sc / n
	U, S, Vt = np.linalg.svd(cov)
	d = 1.0 if np.linalg.det(U) * np.linalg.det(Vt) >= 0 else -1.0
	D = np.diag([1.0, d])
	R = U @ D @ Vt
	scale = float(np.trace(np.diag(S) @ D)) / var_s
	t = mu_d - scale * (R @ mu_s)
	M = np.eye(3, dtype=np.float64)
	M[:2, :2] = scale * R
	M[:2, 2] = t
	return M


def fit_affine(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
	X = np.hstack([src, np.ones((src.shape[0], 1), dtype=np.float64)])
	P, _, rank, _ = np.linalg.lstsq(X, dst, rcond=None)
	if rank < 3:
		return None
	M = np.eye(3, dtype=np.float64)
	M[:2, :] = P.T
	return M


def _normalizing_matrix(pts: np.ndarray) -> Optional[np.ndarray]:
	mu = pts.mean(axis=0)
	mean_dist = float(np.sqrt(((pts - mu) ** 2).sum(axis=1)).mean())
	if mean_dist < 1e-12:
		return None
	s = math.sqrt(2.0) / mean_dist
	return np.array([[s, 0.0, -s * mu[0]], [0.0, s, -s * mu[1]], [0.0, 0.0, 1.0]], dtype=np.float64)


def fit_homography(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
	"""
	Normalised direct linear transform (Hartley); exact for 4 points, least squares beyond.
	"""
	Ts = _normalizing_matrix(src)
	Td = _normalizing_matrix(dst)
	if Ts is None or Td is None:
		return None
	s = project_points(Ts, src)
	d = project_points(Td, dst)
	n = src.shape[0]
	A = np.zeros((2 * n, 9), dtype=np.float64)
	A[0::2, 0:2] = s
	A[0::2, 2] = 1.0
	A[0::2, 6:8] = -d[:, 0:1] * s
	A[0::2, 8] = -d[:, 0]
	A[1::2, 3:5] = s
	A[1::2, 5] = 1.0
	A[1::2, 6:8] = -d[:, 1:2] * s
	A[1::2, 8] = -d[:, 1]
	_, sv, Vt = np.linalg.svd(A)
	if sv.size >= 8 and sv[7] < 1e-10 * max(sv[0], 1e-300):
		return None  # collinear sample
	Hn = Vt[-1].reshape(3, 3)
	H = np.linalg.inv(Td) @ Hn @ Ts
	if abs(H[2, 2]) < 1e-12:
		return None
	return H / H[2, 2]


MODELS: Dict[str, Tuple[int, Callable[[np.ndarray, np.ndarray], Optional[np.ndarray]]]] = {
	"translation": (1, fit_translation),
	"similarity": (2, fit_similarity),
	"affine": (3, fit_affine),
	"homography": (4, fit_homography),
}


def min_samples(model: str) -> int:
	if model not in MODELS:
		raise ValueError(f"Unsupported motion model: {model}")
	return MODELS[model][0]


# -----------------------------
# Sanity check
# -----------------------------

def _is_convex(quad: np.ndarray) -> bool:
	signs = []
	for i in range(4):
		a, b, c = quad[i], quad[(i + 1) % 4], quad[(i + 2) % 4]
		cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
		signs.append(cross > 0)
	return all(signs) or not any(signs)


def is_sane(M: Optional[np.ndarray], candidate_size: Tuple[int, int], settings: EstimatorSettings) -> bool:
	"""
	Reject non-finite, singular, reflecting, strongly scaled/sheared or folding transforms.
	"""
	if M is None or not np.all(np.isfinite(M)):
		return False
	if abs(np.linalg.det(M)) < 1e-12:
		return False
	if abs(M[2, 0]) > settings.max_perspective or abs(M[2, 1]) > settings.max_perspective:
		return False
	A = M[:2, :2] / M[2, 2]
	if np.linalg.det(A) <= 0:
		return False
	s = np.linalg.svd(A, compute_uv=False)
	if s[1] <= 0 or s[0] > settings.max_scale or s[1] < settings.min_scale:
		return False
	if s[0] / s[1] > settings.max_anisotropy:
		return False
	w, h = candidate_size
	corners = np.array([[0, 0], [w - 1, 0], [w - 1, h - 1], [0, h - 1]], dtype=np.float64)
	mapped = project_points(M, corners)
	if not np.all(np.isfinite(mapped)):
		return False
	return _is_convex(mapped)


def reprojection_errors(M: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
	err = np.linalg.norm(project_points(M, src) - dst, axis=1)
	return np.where(np.isfinite(err), err, np.inf)


# -----------------------------
# Sample consensus
# -----------------------------

def estimate_transform(
	matches: MatchSet,
	reference: FeatureSet,
	candidate: FeatureSet,
	settings: EstimatorSettings = EstimatorSettings(),
	pixel_scale: float = 1.0,
) -> Transform:
	"""
	Robustly fit the candidate -> reference transform from matched features.

	pixel_scale converts the reprojection threshold (given in working-resolution pixels)
	to the full-resolution coordinates the features are stored in.
	Raises InsufficientCorrespondences / AlignmentRejected.
	"""
	k, fit = MODELS.get(settings.model, (None, None))
	if fit is None:
		raise ValueError(f"Unsupported motion model: {settings.model}")
	n = len(matches)
	if n < k:
		raise InsufficientCorrespondences(f"{n} correspondences, {settings.model} needs at least {k}")

	dst, src = matches.point_pairs(reference, candidate)
	threshold = float(settings.reprojection_threshold) * float(pixel_scale)
	cand_size = candidate.image_size
	rng = np.random.default_rng(settings.seed)

	best_M: Optional[np.ndarray] = None
	best_count = -1
	best_err = math.inf
	tried = 0
	for _ in range(int(settings.max_iterations)):
		sample = rng.choice(n, size=k, replace=False)
		M = fit(src[sample], dst[sample])
		if not is_sane(M, cand_size, settings):
			continue
		tried += 1
		err = reprojection_errors(M, src, dst)
		inl = err < threshold
		count = int(inl.sum())
		mean_err = float(err[inl].mean()) if count else math.inf
		if count > best_count or (count == best_count and mean_err < best_err):
			best_M, best_count, best_err = M, count, mean_err
			if best_count == n:
				break

	if best_M is None:
		raise AlignmentRejected(f"no sane {settings.model} hypothesis among {n} correspondences")

	required = max(int(settings.min_inliers), int(math.ceil(settings.min_inlier_fraction * n)))
	if best_count < required:
		raise AlignmentRejected(f"only {best_count}/{n} inliers, {required} required")

	M = best_M
	inliers = reprojection_errors(M, src, dst) < threshold
	for _ in range(REFINE_ITERATIONS):
		refit = fit(src[inliers], dst[inliers])
		if not is_sane(refit, cand_size, settings):
			break
		refit_inliers = reprojection_errors(refit, src, dst) < threshold
		if int(refit_inliers.sum()) < int(inliers.sum()):
			break
		converged = np.array_equal(refit_inliers, inliers)
		M, inliers = refit, refit_inliers
		if converged:
			break

	err = reprojection_errors(M, src, dst)[inliers]
	transform = Transform(
		matrix=M,
		model=settings.model,
		inliers=int(inliers.sum()),
		total=n,
		rmse_px=float(np.sqrt(np.mean(err ** 2))) if err.size else 0.0,
		median_px=float(np.median(err)) if err.size else 0.0,
	)
	log.debug(
		"%s fit: %d/%d inliers, rmse %.3f px (%d sane hypotheses)",
		settings.model, transform.inliers, n, transform.rmse_px, tried,
	)
	return transform
