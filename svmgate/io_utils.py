from pathlib import Path
import json
from typing import Dict, Any

import pandas as pd

from .util import safe_write


def ensure_dir(p: Path):
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, data: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    safe_write(path, lambda tmp: Path(tmp).write_text(json.dumps(data, indent=2)))


def write_tsv(path: Path, df: pd.DataFrame, header: bool = False):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False, header=header)


def skip_if_exists(path: Path, force: bool) -> bool:
    return path.exists() and not force
