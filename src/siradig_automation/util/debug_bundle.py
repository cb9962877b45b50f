from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional, Union


def create_job_bundle(
    *,
    job_id: str,
    job_dir: Union[str, Path],
    logs: Iterable[str],
    out_dir: Union[str, Path] = "data",
    log_file: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Create a shareable zip with a job's screenshots, video, job log and (optionally) the process log.

    Intentionally excludes secrets (.env, config.yaml, the state DB).
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    out_path = out_root / f"job_bundle_{job_id}_{stamp}.zip"

    artifacts = Path(job_dir)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # best-effort; don't fail bundling because a file disappeared
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        z.writestr("job.log", "\n".join(logs) + "\n")

        if log_file:
            log = Path(log_file)
            _add_file(z, log, arcname=log.name)

        if artifacts.exists() and artifacts.is_dir():
            for p in sorted(artifacts.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(artifacts)
                _add_file(z, p, arcname=str(Path("artifacts") / rel))

    return out_path
