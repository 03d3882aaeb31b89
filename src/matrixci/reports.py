"""
Report collection for one cell.

Turns the test harness's raw result store into a fixed set of files:

    <output>/
      test-report.txt         condensed summary
      test-reportfailed.txt   verbose listing of xfail / broken / failed
      test-reportfailed.xml   JUnit XML for test dashboards
      index.html              HTML overview
      summary.md              step summary (markdown)
      logs/                   verbatim copy of the harness logs

Everything except logs/ is a pure function of the store contents, so
re-collecting an unchanged store rewrites byte-identical files.
"""
from __future__ import annotations

import html
import shutil
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional

from .step_workflows.kyua import (
    BROKEN,
    EXPECTED_FAILURE,
    FAILED,
    NON_PASSING,
    PASSED,
    SKIPPED,
    KyuaStore,
    StoreContents,
    TestResult,
)

SUMMARY_FILE = "test-report.txt"
FAILURES_FILE = "test-reportfailed.txt"
JUNIT_FILE = "test-reportfailed.xml"
HTML_FILE = "index.html"
STEP_SUMMARY_FILE = "summary.md"
LOGS_DIR = "logs"

_SECTIONS = (
    (SKIPPED, "Skipped tests"),
    (EXPECTED_FAILURE, "Expected failures"),
    (BROKEN, "Broken tests"),
    (FAILED, "Failed tests"),
)


@dataclass(frozen=True)
class ReportBundle:
    directory: Path
    summary: Path
    failures: Path
    junit: Path
    html: Path
    step_summary: Path
    logs: Optional[Path] = None

    def files(self) -> List[Path]:
        out = [self.summary, self.failures, self.junit, self.html, self.step_summary]
        if self.logs is not None:
            out.append(self.logs)
        return out


# ---------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------

def _counts(results: List[TestResult]) -> Dict[str, int]:
    counts = {k: 0 for k in (PASSED, SKIPPED, EXPECTED_FAILURE, BROKEN, FAILED)}
    for r in results:
        counts[r.result] = counts.get(r.result, 0) + 1
    return counts


def _result_line(r: TestResult) -> str:
    reason = f": {r.reason}" if r.reason else ""
    return f"{r.id}  ->  {r.result}{reason}  [{r.duration:.3f}s]"


def render_summary(contents: StoreContents, only: tuple = (SKIPPED,) + NON_PASSING) -> str:
    results = contents.results
    lines: List[str] = []
    for kind, title in _SECTIONS:
        if kind not in only:
            continue
        matching = [r for r in results if r.result == kind]
        if matching:
            lines.append(f"===> {title}")
            lines.extend(_result_line(r) for r in matching)

    c = _counts(results)
    total_time = sum(r.duration for r in results)
    lines.append("===> Summary")
    if contents.source:
        lines.append(f"Results read from {contents.source}")
    if contents.note:
        lines.append(f"Note: {contents.note}")
    lines.append(
        f"Test cases: {len(results)} total, {c[SKIPPED]} skipped, "
        f"{c[EXPECTED_FAILURE]} expected failures, {c[BROKEN]} broken, {c[FAILED]} failed"
    )
    lines.append(f"Total time: {total_time:.3f}s")
    return "\n".join(lines) + "\n"


def render_failures(contents: StoreContents) -> str:
    blocks: List[str] = []
    for r in contents.results:
        if r.result not in NON_PASSING:
            continue
        lines = [f"===> {r.id}"]
        reason = f": {r.reason}" if r.reason else ""
        lines.append(f"Result:     {r.result}{reason}")
        lines.append(f"Duration:   {r.duration:.3f}s")
        if r.stdout:
            lines.extend(["", "Standard output:", r.stdout.rstrip("\n")])
        if r.stderr:
            lines.extend(["", "Standard error:", r.stderr.rstrip("\n")])
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)


def render_junit(contents: StoreContents) -> str:
    results = contents.results
    c = _counts(results)
    suite = ET.Element(
        "testsuite",
        name=contents.source or "kyua",
        tests=str(len(results)),
        failures=str(c[FAILED]),
        errors=str(c[BROKEN]),
        skipped=str(c[SKIPPED]),
        time=f"{sum(r.duration for r in results):.3f}",
    )
    for r in results:
        case = ET.SubElement(
            suite,
            "testcase",
            classname=r.program.replace("/", "."),
            name=r.case,
            time=f"{r.duration:.3f}",
        )
        if r.result == FAILED:
            ET.SubElement(case, "failure", message=r.reason or "failed")
        elif r.result == BROKEN:
            ET.SubElement(case, "error", message=r.reason or "broken")
        elif r.result == SKIPPED:
            ET.SubElement(case, "skipped", message=r.reason or "skipped")

        stderr = r.stderr
        if r.result == EXPECTED_FAILURE:
            stderr = f"Expected failure: {r.reason or ''}\n{stderr}"
        if r.stdout:
            ET.SubElement(case, "system-out").text = r.stdout
        if stderr:
            ET.SubElement(case, "system-err").text = stderr

    ET.indent(suite)
    return '<?xml version="1.0" encoding="utf-8"?>\n' + ET.tostring(suite, encoding="unicode") + "\n"


def render_html(contents: StoreContents) -> str:
    c = _counts(contents.results)
    rows = []
    for r in contents.results:
        rows.append(
            f'<tr class="{r.result}"><td>{html.escape(r.id)}</td>'
            f"<td>{r.result}</td><td>{html.escape(r.reason or '')}</td>"
            f"<td>{r.duration:.3f}s</td></tr>"
        )
    note = f"<p>{html.escape(contents.note)}</p>" if contents.note else ""
    counts = ", ".join(f"{v} {k}" for k, v in c.items())
    return "\n".join([
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\"><title>Test results</title></head><body>",
        f"<h1>Test results: {html.escape(contents.source or 'no store')}</h1>",
        f"<p>{len(contents.results)} test cases: {counts}</p>",
        note,
        "<table><tr><th>Test case</th><th>Result</th><th>Reason</th><th>Duration</th></tr>",
        *rows,
        "</table></body></html>",
        "",
    ])


def render_step_summary(contents: StoreContents, exit_code: Optional[int]) -> str:
    passed = exit_code == 0 if exit_code is not None else all(r.passing for r in contents.results)
    header = "# ✅ All mandatory checks passed" if passed else "# ❌ Some checks failed"
    body = render_summary(contents, only=NON_PASSING)
    if not passed:
        body += render_failures(contents)
    return header + "\n" + body.replace("===>", "##")


# ---------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------

class ReportCollector:
    """Converts a harness result store into the fixed report layout."""

    def collect(
        self,
        store: KyuaStore,
        output_dir: str | Path,
        *,
        exit_code: Optional[int] = None,
    ) -> ReportBundle:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        contents = store.load()

        bundle = ReportBundle(
            directory=out,
            summary=out / SUMMARY_FILE,
            failures=out / FAILURES_FILE,
            junit=out / JUNIT_FILE,
            html=out / HTML_FILE,
            step_summary=out / STEP_SUMMARY_FILE,
        )
        _write(bundle.summary, render_summary(contents))
        _write(bundle.failures, render_failures(contents))
        _write(bundle.junit, render_junit(contents))
        _write(bundle.html, render_html(contents))
        _write(bundle.step_summary, render_step_summary(contents, exit_code))

        if store.logs_dir is not None and store.logs_dir.is_dir():
            dest = out / LOGS_DIR
            shutil.copytree(store.logs_dir, dest, dirs_exist_ok=True)
            bundle = replace(bundle, logs=dest)
        return bundle


def _write(path: Path, text: str) -> None:
    with path.open("w", encoding="utf-8", newline="\n") as f:
        f.write(text)
