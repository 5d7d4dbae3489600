"""Convenience runner for the project config verification endpoint under mixed failure load."""

import asyncio
import os
import sys

from load_core import LOGGER, LoadConfig, LoadRunner, format_summary, setup_logging
from load_scenarios import GithubTemplate, JiraTemplate, Scenario
from load_schedule import Stage

VERIFICATION_STAGES = (
    Stage(10, 50),
    Stage(10, 100),
    Stage(30, 100),
    Stage(10, 0),
)

VALID_JIRA = Scenario(
    name="valid-jira",
    weight=50,
    template=JiraTemplate(
        project_name="LoadTest-Valid",
        group_id=1,
        host_url="https://jira.atlassian.com",
        api_token="valid-token-simulation",
        email="test@example.com",
    ),
)

VERIFICATION_SCENARIOS = (
    VALID_JIRA,
    # 4xx, must not count against the circuit breaker
    Scenario(
        name="invalid-auth",
        weight=20,
        template=JiraTemplate(
            project_name="LoadTest-Invalid",
            group_id=2,
            host_url="https://jira.atlassian.com",
            api_token="invalid-token",
            email="test@example.com",
        ),
    ),
    Scenario(
        name="slow-upstream",
        weight=20,
        template=GithubTemplate(
            project_name="LoadTest-Slow",
            group_id=3,
            repo_url="https://api.github.com/repos/octocat/Hello-World",
            access_token="slow-simulation",
        ),
    ),
    Scenario(
        name="service-unavailable",
        weight=10,
        template=JiraTemplate(
            project_name="LoadTest-503",
            group_id=4,
            host_url="https://api.github.com/repos/nonexistent/repo",
            api_token="503-simulation",
            email="test@example.com",
        ),
    ),
)


async def main() -> int:
    config = LoadConfig(
        target=os.environ.get("BASE_URL", "http://localhost:8083"),
        token=os.environ.get("JWT_TOKEN"),
        label="verification",
        stages=VERIFICATION_STAGES,
        scenarios=VERIFICATION_SCENARIOS,
        request_timeout=10.0,
        summary_interval=10,
    )

    setup_logging("INFO")
    report = await LoadRunner(config).run(install_signal_handlers=True)
    LOGGER.info("\n%s", format_summary(report))
    return 0 if report.verdict.passed else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
