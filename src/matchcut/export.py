"""Writing processed artifacts to disk."""

import logging
import pathlib
from typing import List, Sequence

from .image_io import save_png
from .models import ProcessedArtifact

log = logging.getLogger(__name__)


def export_name(index: int, original_name: str) -> str:
    """`matched_logo_<NNNN>_<stem>.png` for the 0-based `index`."""
    stem = pathlib.Path(original_name).stem
    return f"matched_logo_{index + 1:04d}_{stem}.png"


def export_artifacts(
    artifacts: Sequence[ProcessedArtifact],
    out_dir,
    include_diagnostics: bool = False,
) -> List[pathlib.Path]:
    """Write artifacts sorted by original name; returns the written paths."""
    out_dir = pathlib.Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    ordered = sorted(artifacts, key=lambda aa: aa.original_name)
    for idx, artifact in enumerate(ordered):
        name = export_name(idx, artifact.original_name)
        written.append(save_png(artifact.image, out_dir / name))
        if include_diagnostics and artifact.diagnostic.shape[:2] != (1, 1):
            save_png(artifact.diagnostic, out_dir / "debug" / name)
    log.info(f"Exported {len(written)} image(s) to {out_dir}")
    return written
