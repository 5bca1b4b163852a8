from __future__ import annotations

import time
import zipfile
from pathlib import Path


# Never ship these, even if someone points debug_dir at the project root.
_EXCLUDED_NAMES = {".env", "config.yaml", "config.yml"}
_EXCLUDED_SUFFIXES = {".tmp"}


def _is_excluded(path: Path) -> bool:
    name = path.name.lower()
    if name in _EXCLUDED_NAMES or path.suffix.lower() in _EXCLUDED_SUFFIXES:
        return True
    return "storage_state" in name


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    institution: str = "",
) -> Path:
    """
    Zip page captures + the log so a failed run can be diagnosed elsewhere.

    Secrets (dotenv, YAML config, browser storage_state cookie jars) are left out.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    inst = (institution or "").strip().lower()
    inst_part = f"_{inst}" if inst else ""
    out_path = out_root / f"debug_bundle{inst_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.is_file() and not _is_excluded(file_path):
                z.write(file_path, arcname=arcname)
        except OSError:
            # A capture may disappear while we bundle; skip it.
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)
        if dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if p.is_file():
                    _add_file(z, p, arcname=str(Path("debug") / p.relative_to(dbg)))

    return out_path
