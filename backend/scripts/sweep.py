"""Expire overdue approvals and resume due delays; run from cron every minute."""
from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.dataroll import create_app
from backend.dataroll.workflows import get_services
from backend.dataroll.workflows.scheduler import run_sweep


def main() -> None:
    app = create_app()
    with app.app_context():
        report = run_sweep(get_services())
        print(
            "Sweep completed",
            f"approvals expired={len(report.expired_approvals)}",
            f"executions resumed={len(report.resumed)}",
            f"failures={len(report.failed)}",
        )


if __name__ == "__main__":
    main()
