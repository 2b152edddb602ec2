"""Run one ABM report from the command line and write the response JSON."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from abm_insights.config import settings
from abm_insights.services.abm.errors import AbmError
from abm_insights.services.abm.runner import build_runner

logger = logging.getLogger("pipelines.abm_report")

DEFAULT_OUTPUT = Path(settings.report_output_dir or "output") / "abm_report.json"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate ABM insights and an outreach email for one company.")
    parser.add_argument("--company", type=str, required=True, help="Company display name.")
    parser.add_argument("--domain", type=str, required=True, help="Company website domain, e.g. acme.com.")
    parser.add_argument(
        "--notify",
        action="store_true",
        help="Deliver the finished email to the configured n8n webhook.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Destination for the report JSON (default: {DEFAULT_OUTPUT})",
    )
    return parser.parse_args(argv)


def run(argv: Sequence[str] | None = None) -> Path:
    args = parse_args(argv)
    runner = build_runner()
    response = runner.create_run(args.company, args.domain, notify=args.notify)
    output_path = args.output
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(response.model_dump(mode="json"), indent=2), encoding="utf-8")
    logger.info(
        "abm.report.rendered",
        extra={"run_id": str(response.run_id), "output": str(output_path)},
    )
    return output_path


def main() -> None:
    """Entry point for `python -m pipelines.abm_report`."""
    try:
        run()
    except AbmError as exc:
        logger.error("abm.report.failed", extra={"code": exc.code, "error": str(exc)})
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
