from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, UploadFile

from stackhub.services.config import ServiceSettings
from stackhub.services.fusion import MODES
from stackhub.services.stack_pipeline import run_pipeline
from stackhub.services.status_store import read_status, write_status


router = APIRouter(prefix="/pipeline", tags=["stack"])


def _slugify(text: str) -> str:
	return "".join(ch if (ch.isalnum() or ch in ("-", "_")) else "-" for ch in text).strip("-_").lower()


@router.post("/upload", summary="Upload a bracketed/focus series and start alignment + fusion")
async def upload(
	background_tasks: BackgroundTasks,
	files: List[UploadFile] = File(...),
	mode: Optional[str] = Form(None),
	preview: bool = Form(False),
):
	mode = mode or ServiceSettings.from_env().fusion_mode
	if mode not in MODES:
		raise HTTPException(status_code=422, detail=f"mode must be one of {list(MODES)}")
	files_meta = []
	for f in files:
		data = await f.read()
		files_meta.append({"filename": f.filename or "image.tif", "data": data})
	filenames = [m["filename"] for m in files_meta]
	# Human-readable job_id: "<first_filename_stem>_<ddmmyyyy>_<short uid>"
	first_stem = _slugify(Path(filenames[0]).stem) if filenames else "job"
	date_str = datetime.now().strftime("%d%m%Y")
	job_id = f"{first_stem or 'job'}_{date_str}_{uuid.uuid4().hex[:6]}"
	write_status(job_id, {"job_id": job_id, "status": "queued", "step": "Queued"})
	background_tasks.add_task(run_pipeline, job_id, files_meta, mode, preview)
	return {
		"job_id": job_id,
		"status": "queued",
		"mode": mode,
		"preview": preview,
		"num_files": len(files_meta),
		"filenames": filenames,
		"status_endpoint": f"/pipeline/status/{job_id}",
		"result_endpoint": f"/pipeline/result/{job_id}",
	}


@router.get("/status/{job_id}", summary="Get pipeline status")
def status(job_id: str):
	return read_status(job_id)


@router.get("/result/{job_id}", summary="Get pipeline results")
def result(job_id: str):
	data = read_status(job_id)
	if data.get("status") != "completed":
		return {"job_id": job_id, "status": data.get("status"), "message": "not completed yet", "error": data.get("error")}
	return {
		"job_id": job_id,
		"order": data.get("order", []),
		"reference": data.get("reference"),
		"aligned": data.get("aligned", []),
		"transforms": data.get("transforms"),
		"fused": data.get("fused"),
		"frames_total": data.get("frames_total"),
		"frames_used": data.get("frames_used"),
		"previews": data.get("previews", []),
	}
