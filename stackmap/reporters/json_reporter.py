"""
JSON plan and run report generator.
"""
import json
from datetime import datetime, timezone
from typing import Optional

from stackmap import __version__
from stackmap.executor import RunResult
from stackmap.models.plan import Plan


def _meta(source_path: str) -> dict:
    return {
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "source": source_path,
        "tool": "stackmap",
        "version": __version__,
    }


def build_report(plan: Plan, source_path: str, run: Optional[RunResult] = None) -> str:
    report = {
        "meta": _meta(source_path),
        "plan": plan.to_dict(),
    }
    if run is not None:
        report["run"] = run.to_dict()
    return json.dumps(report, indent=2)
