from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from stackhub.services.config import MatcherSettings
from stackhub.services.models import Correspondence, FeatureSet, MatchSet

log = logging.getLogger(__name__)

_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint16)
_CHUNK = 512
_HAMMING_CHUNK = 64


def _l2_distances(cand: np.ndarray, ref: np.ndarray) -> np.ndarray:
	c = cand.astype(np.float64)
	r = ref.astype(np.float64)
	d2 = (c * c).sum(axis=1)[:, None] + (r * r).sum(axis=1)[None, :] - 2.0 * (c @ r.T)
	return np.sqrt(np.maximum(d2, 0.0))


def _hamming_distances(cand: np.ndarray, ref: np.ndarray) -> np.ndarray:
	xor = np.bitwise_xor(cand[:, None, :], ref[None, :, :])
	return _POPCOUNT[xor].sum(axis=2).astype(np.float64)


def _two_nearest(cand: np.ndarray, ref: np.ndarray, metric: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
	"""
	For every candidate descriptor return (nearest reference index, nearest distance,
	second-nearest distance). argmin picks the lowest index among equal distances.
	"""
	dist_fn = _hamming_distances if metric == "hamming" else _l2_distances
	n = cand.shape[0]
	chunk = _HAMMING_CHUNK if metric == "hamming" else _CHUNK
	best_idx = np.zeros(n, dtype=np.int64)
	best = np.zeros(n, dtype=np.float64)
	second = np.full(n, np.inf, dtype=np.float64)
	rows = np.arange(min(n, chunk))
	for start in range(0, n, chunk):
		d = dist_fn(cand[start:start + chunk], ref)
		k = d.shape[0]
		idx = np.argmin(d, axis=1)
		best_idx[start:start + k] = idx
		best[start:start + k] = d[rows[:k], idx]
		if d.shape[1] > 1:
			d[rows[:k], idx] = np.inf
			second[start:start + k] = d.min(axis=1)
	return best_idx, best, second


def match_features(reference: FeatureSet, candidate: FeatureSet, settings: MatcherSettings = MatcherSettings()) -> MatchSet:
	"""
	Nearest-neighbour matching with the ratio test, one-to-one on the reference side.

	A candidate feature is matched to its nearest reference feature when
	nearest < ratio * second_nearest. When several candidates keep the same reference
	feature the closest one wins (ties -> lower candidate index). Returned matches are
	ordered by candidate index.
	"""
	if len(reference) == 0 or len(candidate) == 0:
		return MatchSet()
	if reference.metric != candidate.metric:
		raise ValueError(f"descriptor metrics differ: {reference.metric} vs {candidate.metric}")
	if reference.descriptors.shape[1] != candidate.descriptors.shape[1]:
		raise ValueError("descriptor lengths differ")

	ref_idx, d0, d1 = _two_nearest(candidate.descriptors, reference.descriptors, reference.metric)
	accepted = np.nonzero(d0 < float(settings.ratio) * d1)[0]

	# one-to-one: strongest claim on each reference feature wins
	claim_order = accepted[np.argsort(d0[accepted], kind="stable")]
	used = set()
	kept = []
	for ci in claim_order:
		ri = int(ref_idx[ci])
		if ri in used:
			continue
		used.add(ri)
		kept.append(int(ci))

	if settings.max_matches and len(kept) > settings.max_matches:
		kept = kept[: settings.max_matches]
	kept.sort()

	matches = [Correspondence(int(ref_idx[ci]), ci, float(d0[ci])) for ci in kept]
	log.debug(
		"matched %d/%d candidate features (ratio %.2f, %d passed before one-to-one)",
		len(matches), len(candidate), settings.ratio, accepted.size,
	)
	return MatchSet(matches)
