from __future__ import annotations

from pathlib import Path
from typing import List

import cv2
import numpy as np
from PIL import Image

from stackhub.services.image_io import load_image
from stackhub.services.image_utils import from_float01, to_color01


def generate_previews(paths: List[Path], preview_dir: Path, max_w: int = 512) -> List[str]:
	"""
	Small sRGB JPEG previews (alpha dropped) for quick visual checks of aligned/fused frames.
	"""
	preview_dir.mkdir(parents=True, exist_ok=True)
	out = []
	for p in paths:
		arr = from_float01(to_color01(np.asarray(load_image(p).pixels)), np.uint8)
		if arr.shape[2] == 1:
			img = Image.fromarray(arr[..., 0]).convert("RGB")
		else:
			img = Image.fromarray(cv2.cvtColor(arr, cv2.COLOR_BGR2RGB))
		if img.width > max_w:
			r = max_w / float(img.width)
			img = img.resize((max_w, max(1, int(img.height * r))), Image.LANCZOS)
		out_path = preview_dir / (Path(p).stem + ".jpg")
		img.save(out_path, format="JPEG", quality=85, optimize=True)
		out.append(str(out_path))
	return out
