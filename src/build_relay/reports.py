"""Window reports and the read-only history view.

Every window that does real work writes one JSON report into the reports
directory under workdir. That directory rides along in each snapshot, so
the history covers every window of the build, not just the local one.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from build_relay.constants import REPORTS_DIRNAME


def reports_dir_for(workdir: Path) -> Path:
    return Path(workdir) / REPORTS_DIRNAME


def report_filename(started: datetime) -> str:
    return f"window_{started.strftime('%Y%m%d_%H%M%S_%f')}.json"


def write_window_report(report: dict, reports_dir: Path, filename: str) -> Path:
    """Write (or overwrite) one window report."""
    reports_dir.mkdir(parents=True, exist_ok=True)
    report_path = reports_dir / filename
    report_path.write_text(json.dumps(report, indent=2))
    return report_path


def find_reports(reports_dir: Path) -> list[dict]:
    """All readable window reports, most recent first."""
    reports = []

    if not reports_dir.exists():
        return reports

    for f in reports_dir.glob("window_*.json"):
        try:
            data = json.loads(f.read_text())
            data["_report_file"] = str(f)
            reports.append(data)
        except (json.JSONDecodeError, IOError):
            pass

    reports.sort(key=lambda r: r.get("started_at", ""), reverse=True)
    return reports


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def print_summary(workdir: Path, reports_dir: Optional[Path] = None) -> None:
    """
    Print a human-readable summary of the build's window history.

    Goal: see where the build stands and why, in one screen.
    """
    if reports_dir is None:
        reports_dir = reports_dir_for(workdir)

    reports = find_reports(reports_dir)

    print("=" * 60)
    print(f"BUILD RELAY: {workdir}")
    print("=" * 60)
    print()

    if not reports:
        print("No window reports found.")
        print(f"  Searched: {reports_dir}")
        return

    latest = reports[0]
    print("LATEST WINDOW")
    print("-" * 40)
    print(f"  Started:     {latest['started_at'][:19]}")
    print(f"  Resumed:     {latest['resumed']}")
    print(f"  Phase:       {latest['start_phase']} -> {latest['end_phase']}")
    print(f"  Duration:    {format_duration(latest['elapsed_seconds'])}")
    print(f"  Checkpoint:  {'saved' if latest.get('checkpoint_saved') else 'not saved'}")
    for run in latest.get("runs", []):
        budget = run.get("budget_seconds")
        budget_text = "unbounded" if budget is None else format_duration(budget)
        print(
            f"    {run['phase']:<8} {run['outcome']:<14} "
            f"ran {format_duration(run['duration_seconds'])} of {budget_text}"
        )
    if latest.get("error"):
        print(f"  Error:       {latest['error'][:60]}")
    print()

    if len(reports) > 1:
        print("HISTORY")
        print("-" * 40)
        print(f"  Windows:     {len(reports)}")
        for r in reports[:10]:
            icon = "✓" if r.get("finished") else "…"
            print(f"    {icon} {r['started_at'][:16]} {r['start_phase']} -> {r['end_phase']}")
        if len(reports) > 10:
            print(f"    ... and {len(reports) - 10} more")
        print()

    print("VERDICT")
    print("-" * 40)
    if latest.get("finished"):
        print("  ✓ COMPLETE - Final artifact uploaded")
    elif latest.get("error"):
        print("  ✗ ERROR - Window stopped on an error, see log")
    elif any(run["outcome"] == "TIMED_OUT" for run in latest.get("runs", [])):
        print(f"  ◐ IN PROGRESS - {latest['end_phase']} timed out, next window resumes it")
    elif latest.get("runs"):
        print(f"  ✗ FAILED - {latest['end_phase']} failed, next window retries it")
    else:
        print(f"  ◐ IN PROGRESS - at {latest['end_phase']}")
    print()
