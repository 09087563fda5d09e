from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from stackhub.logging_setup import get_logger
from stackhub.services.alignment import Aligner
from stackhub.services.config import FuserSettings, ServiceSettings
from stackhub.services.errors import StackError
from stackhub.services.fusion import Fuser
from stackhub.services.image_io import load_image
from stackhub.services.image_utils import to_gray01
from stackhub.services.previews import generate_previews
from stackhub.services.status_store import write_status

log = get_logger(__name__)


def _mean_brightness(path: Path) -> float:
	return float(np.mean(to_gray01(np.asarray(load_image(path).pixels))))


def order_by_brightness(paths: List[Path]) -> List[Path]:
	"""
	Darkest to brightest, so the middle frame (the reference) is the median exposure.
	Undecodable files sort last and fail later in alignment.
	"""
	keyed = []
	for p in paths:
		try:
			keyed.append((_mean_brightness(p), p))
		except StackError:
			keyed.append((float("inf"), p))
	keyed.sort(key=lambda t: t[0])
	return [p for _, p in keyed]


def run_pipeline(job_id: str, files_meta: List[Dict[str, Any]], mode: str = "exposure", preview: bool = False, settings: Optional[ServiceSettings] = None) -> None:
	settings = settings or ServiceSettings.from_env()
	root = settings.data_dir
	ext = settings.output_format
	extra = {"job_id": job_id}
	status: Dict[str, Any] = {"job_id": job_id}

	def update(**fields: Any) -> None:
		status.update(fields)
		write_status(job_id, dict(status), settings)

	try:
		# 1) Save originals to <data>/input/<job_id>/
		update(status="saving", step="Save Images")
		in_dir = root / "input" / job_id
		in_dir.mkdir(parents=True, exist_ok=True)
		saved: List[Path] = []
		for fm in files_meta:
			# index prefix keeps uploads with the same basename apart
			name = f"{len(saved):02d}_{Path(fm['filename']).name}"
			p = in_dir / name
			with p.open("wb") as f:
				f.write(fm["data"])
			saved.append(p)
		if not saved:
			raise ValueError("no images uploaded")

		# 2) Order by exposure and pick the median frame as reference
		ordered = order_by_brightness(saved)
		ref_index = len(ordered) // 2
		update(status="ordered", step="Order Frames", order=[p.name for p in ordered], reference=ordered[ref_index].name)

		# 3) Align every frame onto the reference
		update(status="aligning", step="Align Images")
		align_dir = root / "aligned" / job_id
		aligner = Aligner.create().unwrap()
		ref_path = ordered[ref_index]
		ref_out = align_dir / f"{ref_path.stem}_aligned.{ext}"
		aligner.set_reference_image(ref_path, ref_out, is_preview=preview).unwrap()

		frames: List[Dict[str, Any]] = []
		aligned_paths: List[str] = []
		for idx, p in enumerate(ordered):
			info: Dict[str, Any] = {"index": idx, "filename": p.name}
			if idx == ref_index:
				info.update(reference=True, ok=True, valid=True, overlap_ratio=1.0)
				aligned_paths.append(str(ref_out))
			else:
				out = align_dir / f"{p.stem}_aligned.{ext}"
				res = aligner.align_image(p, out, is_preview=preview)
				if res.ok:
					aligned = res.value
					info.update(
						ok=True,
						valid=aligned.valid,
						overlap_ratio=aligned.overlap_ratio,
						transform=aligned.transform.to_dict(),
					)
					aligned_paths.append(str(out))
				else:
					info.update(ok=False, error=res.kind, message=str(res.error))
					log.warning("frame %s skipped: %s", p.name, res.error, extra=extra)
			frames.append(info)

		transforms_path = align_dir / "transforms.json"
		with transforms_path.open("w", encoding="utf-8") as f:
			json.dump({"job_id": job_id, "reference_index": ref_index, "reference": ref_path.name, "frames": frames}, f, indent=2)
		update(aligned=aligned_paths, transforms=str(transforms_path))

		# 4) Fuse
		update(status="fusing", step="Fuse Images")
		fused_path = root / "fused" / job_id / f"fused.{ext}"
		fuser = Fuser.create(replace(FuserSettings(), mode=mode)).unwrap()
		frames_used = fuser.fuse_images(aligned_paths, fused_path).unwrap()

		# 5) Previews
		previews = generate_previews([Path(p) for p in aligned_paths] + [fused_path], root / "previews" / job_id, settings.preview_max_width)

		update(
			status="completed",
			step="Done",
			fused=str(fused_path),
			frames_total=len(ordered),
			frames_used=int(frames_used),
			previews=previews,
		)
		log.info("job completed: %d/%d frames fused", frames_used, len(ordered), extra=extra)
	except Exception as e:
		log.exception("job failed", extra=extra)
		update(status="error", error=str(e), error_kind=getattr(e, "kind", "unknown"))
