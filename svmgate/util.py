import math
import os
import sys
import traceback


def safe_write(path, writer_fn):
    tmp = str(path) + ".tmp"
    writer_fn(tmp)
    os.replace(tmp, str(path))


def exception_to_report(step, cfg_dict, out_dir, e, context=None):
    """Crash report for ``crash_report.json``; ``context`` carries run facts such as label and example counts."""
    rep = {
        "step": step,
        "exception": type(e).__name__,
        "message": str(e),
        "traceback": traceback.format_exc(),
        "context": dict(context or {}),
        "config_snapshot": cfg_dict,
        "env": {"python": sys.version},
        "artifacts": [],
    }
    if os.path.isdir(out_dir):
        rep["artifacts"] = sorted(
            os.path.relpath(os.path.join(base, f), out_dir)
            for base, _, files in os.walk(out_dir)
            for f in files
        )
    return rep


def log_b(x: float, base: float) -> float:
    return math.log(x) / math.log(base)


def subset_to_str(subset) -> str:
    return "-".join(str(int(i)) for i in subset)
