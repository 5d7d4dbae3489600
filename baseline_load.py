"""Convenience runner that sends only valid verification requests at low concurrency."""

import asyncio
import os
import sys

from load_core import LOGGER, LoadConfig, LoadRunner, format_summary, setup_logging
from load_schedule import Stage
from load_thresholds import parse_threshold
from verification_load import VALID_JIRA


async def main() -> int:
    config = LoadConfig(
        target=os.environ.get("BASE_URL", "http://localhost:8083"),
        token=os.environ.get("JWT_TOKEN"),
        label="baseline",
        stages=(Stage(10, 5), Stage(50, 10)),
        scenarios=(VALID_JIRA,),
        # healthy traffic only, so the bar is higher than for the mixed run
        thresholds=(
            parse_threshold("latency", "p95 < 2000"),
            parse_threshold("success", "success_rate > 0.99"),
        ),
        summary_interval=30,
    )

    setup_logging("INFO")
    report = await LoadRunner(config).run(install_signal_handlers=True)
    LOGGER.info("\n%s", format_summary(report))
    return 0 if report.verdict.passed else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
