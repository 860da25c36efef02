"""
Root pytest configuration for hdwatch tests.

Adds ``--fail-on-skip`` so CI notices tests that silently skip because of
missing setup.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--fail-on-skip",
        action="store_true",
        default=False,
        help="Treat skipped tests as failures",
    )


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None, pytest.TestReport, None]:
    outcome = yield
    report = outcome.get_result()  # type: ignore[attr-defined]

    if not report.skipped or hasattr(report, "wasxfail"):
        return
    if not item.config.getoption("--fail-on-skip"):
        return

    longrepr = report.longrepr
    reason = longrepr[2] if isinstance(longrepr, tuple) and len(longrepr) >= 3 else longrepr
    report.outcome = "failed"
    report.longrepr = f"Test was skipped but --fail-on-skip is enabled: {reason}"
