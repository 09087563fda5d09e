from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from stackhub.services.config import ServiceSettings


def jobs_dir(settings: Optional[ServiceSettings] = None) -> Path:
	settings = settings or ServiceSettings.from_env()
	path = settings.data_dir / "jobs"
	path.mkdir(parents=True, exist_ok=True)
	return path


def write_status(job_id: str, data: Dict[str, Any], settings: Optional[ServiceSettings] = None) -> None:
	status_path = jobs_dir(settings) / f"{job_id}.json"
	tmp_path = status_path.with_suffix(".json.part")
	with tmp_path.open("w", encoding="utf-8") as f:
		json.dump(data, f, indent=2)
	tmp_path.replace(status_path)


def read_status(job_id: str, settings: Optional[ServiceSettings] = None) -> Dict[str, Any]:
	status_path = jobs_dir(settings) / f"{job_id}.json"
	if not status_path.exists():
		return {"job_id": job_id, "status": "unknown"}
	with status_path.open("r", encoding="utf-8") as f:
		return json.load(f)
