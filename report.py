# report.py
"""
Per-run result object. Each processing stage returns its own LicenseReport and the
caller merges them; nothing is accumulated globally.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _file_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


@dataclass
class LicenseReport:
    changed: Dict[str, List[str]] = field(default_factory=dict)
    skipped: Dict[str, List[str]] = field(default_factory=dict)
    failed: Dict[str, List[str]] = field(default_factory=dict)

    def record_changed(self, category: str, resource_id: str) -> None:
        self.changed.setdefault(category, []).append(resource_id)

    def record_skipped(self, category: str, resource_id: str) -> None:
        self.skipped.setdefault(category, []).append(resource_id)

    def record_failed(self, category: str, resource_id: str) -> None:
        self.failed.setdefault(category, []).append(resource_id)

    def merge(self, other: Optional["LicenseReport"]) -> "LicenseReport":
        out = LicenseReport()
        for src in (self, other):
            if src is None:
                continue
            for bucket in ("changed", "skipped", "failed"):
                dst = getattr(out, bucket)
                for cat, ids in getattr(src, bucket).items():
                    dst.setdefault(cat, []).extend(ids)
        return out

    def counts(self) -> Dict[str, Dict[str, int]]:
        cats = sorted(set(self.changed) | set(self.skipped) | set(self.failed))
        return {
            c: {
                "changed": len(self.changed.get(c, [])),
                "skipped": len(self.skipped.get(c, [])),
                "failed": len(self.failed.get(c, [])),
            }
            for c in cats
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.counts(),
            "changed": self.changed,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def print_report(report: LicenseReport, report_only: bool = False) -> None:
    verb = "would change" if report_only else "changed"
    print("\n=== License Update Summary ===")
    counts = report.counts()
    if not counts:
        print("No matching resources found.")
        print("")
        return
    for cat, c in counts.items():
        print(f"{cat}: {verb}={c['changed']}  skipped={c['skipped']}  failed={c['failed']}")
        for rid in report.changed.get(cat, [])[:50]:
            print(f"  - {rid}")
        more = len(report.changed.get(cat, [])) - 50
        if more > 0:
            print(f"  ... +{more} more")
    print("")


def write_report(report: LicenseReport, output_dir: str, prefix: str = "license_report") -> str:
    _ensure_dir(output_dir)
    path = os.path.join(output_dir, f"{prefix}_{_file_stamp()}.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    print(f"Report written: {path}")
    return path
